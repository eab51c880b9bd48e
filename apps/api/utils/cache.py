"""
Redis Caching Utility for the scheduling API
Caches the weekly schedule view and hospital holiday lists. Slots, calendar
counts and queues are always read from the database.
"""

import redis
import json
import os
from typing import Optional, Any, List
import logging

logger = logging.getLogger(__name__)

# Redis connection settings
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
CACHE_ENABLED = os.getenv("CACHE_ENABLED", "true").lower() == "true"


# Cache TTL settings (in seconds)
class CacheTTL:
    DOCTOR_SCHEDULE = 300  # 5 minutes
    HOSPITAL_HOLIDAYS = 3600  # 1 hour (rarely changes)


# Cache key prefixes
class CacheKeys:
    DOCTOR_SCHEDULE = "doctor:schedule:{doctor_id}"
    HOSPITAL_HOLIDAYS = "hospital:holidays:{hospital_id}"


class RedisCache:
    """Redis cache manager with connection pooling and error handling"""

    _instance: Optional['RedisCache'] = None
    _redis_client: Optional[redis.Redis] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._redis_client is None and CACHE_ENABLED:
            try:
                self._redis_client = redis.from_url(
                    REDIS_URL,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True
                )
                # Test connection
                self._redis_client.ping()
                logger.info("Redis cache connected successfully")
            except redis.RedisError as e:
                logger.warning(f"Redis connection failed: {e}. Caching disabled.")
                self._redis_client = None

    @property
    def client(self) -> Optional[redis.Redis]:
        return self._redis_client

    @property
    def is_available(self) -> bool:
        return CACHE_ENABLED and self._redis_client is not None

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache"""
        if not self.is_available:
            return None
        try:
            value = self._redis_client.get(key)
            if value:
                return json.loads(value)
            return None
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Cache get error for key {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl: int = 300) -> bool:
        """Set value in cache with TTL"""
        if not self.is_available:
            return False
        try:
            serialized = json.dumps(value, default=str)
            self._redis_client.setex(key, ttl, serialized)
            return True
        except redis.RedisError as e:
            logger.warning(f"Cache set error for key {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        """Delete key from cache"""
        if not self.is_available:
            return False
        try:
            self._redis_client.delete(key)
            return True
        except redis.RedisError as e:
            logger.warning(f"Cache delete error for key {key}: {e}")
            return False

    def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching pattern"""
        if not self.is_available:
            return 0
        try:
            keys = list(self._redis_client.scan_iter(match=pattern))
            if keys:
                return self._redis_client.delete(*keys)
            return 0
        except redis.RedisError as e:
            logger.warning(f"Cache delete pattern error for {pattern}: {e}")
            return 0


# Singleton instance
cache = RedisCache()


class ScheduleCache:
    """Schedule-specific caching operations"""

    @staticmethod
    def get_schedule(doctor_id: int) -> Optional[dict]:
        """Get cached weekly schedule view"""
        key = CacheKeys.DOCTOR_SCHEDULE.format(doctor_id=doctor_id)
        return cache.get(key)

    @staticmethod
    def set_schedule(doctor_id: int, schedule_data: dict) -> bool:
        key = CacheKeys.DOCTOR_SCHEDULE.format(doctor_id=doctor_id)
        return cache.set(key, schedule_data, CacheTTL.DOCTOR_SCHEDULE)

    @staticmethod
    def invalidate_schedule(doctor_id: int) -> bool:
        key = CacheKeys.DOCTOR_SCHEDULE.format(doctor_id=doctor_id)
        return cache.delete(key)

    @staticmethod
    def invalidate_hospital_schedules() -> int:
        """Drop every schedule view, e.g. after a hospital shift timing change"""
        return cache.delete_pattern(CacheKeys.DOCTOR_SCHEDULE.format(doctor_id="*"))

    @staticmethod
    def get_holidays(hospital_id: int) -> Optional[List[dict]]:
        key = CacheKeys.HOSPITAL_HOLIDAYS.format(hospital_id=hospital_id)
        return cache.get(key)

    @staticmethod
    def set_holidays(hospital_id: int, holidays: List[dict]) -> bool:
        key = CacheKeys.HOSPITAL_HOLIDAYS.format(hospital_id=hospital_id)
        return cache.set(key, holidays, CacheTTL.HOSPITAL_HOLIDAYS)

    @staticmethod
    def invalidate_holidays(hospital_id: int) -> bool:
        """Invalidate cached holiday list"""
        key = CacheKeys.HOSPITAL_HOLIDAYS.format(hospital_id=hospital_id)
        return cache.delete(key)
