"""Shared pytest fixtures: in-memory database, seeded clinic, API client"""
import os

os.environ.setdefault("CACHE_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("USE_SQLITE", "true")

from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel

from database import build_engine, get_session
from models import DoctorProfile, DoctorSchedule, Hospital


def upcoming(weekday: int, weeks_ahead: int = 1) -> date:
    """Next date with the given weekday, strictly after today (UTC)"""
    today = datetime.now(timezone.utc).date()
    days = (weekday - today.weekday()) % 7 or 7
    return today + timedelta(days=days + 7 * (weeks_ahead - 1))


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite so that concurrent sessions use separate connections"""
    engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def next_monday() -> date:
    return upcoming(0)


def _seed_doctor(
    session: Session,
    duration: int = 30,
    schedule: Dict[int, Iterable[str]] = None,
    tz_name: str = "UTC",
    hospital_config: dict = None,
    doctor_config: dict = None,
) -> DoctorProfile:
    hospital = Hospital(name="City Clinic", timezone=tz_name, shift_timing_config=hospital_config)
    session.add(hospital)
    session.commit()
    session.refresh(hospital)

    doctor = DoctorProfile(
        hospital_id=hospital.id,
        full_name="Dr. Meera Rao",
        specialization="General Medicine",
        appointment_duration_minutes=duration,
        shift_timing_config=doctor_config,
    )
    session.add(doctor)
    session.commit()
    session.refresh(doctor)

    if schedule is None:
        schedule = {0: ("morning",)}
    for day_of_week, periods in schedule.items():
        periods = set(periods)
        session.add(DoctorSchedule(
            doctor_id=doctor.id,
            day_of_week=day_of_week,
            is_working=bool(periods),
            morning="morning" in periods,
            evening="evening" in periods,
            night="night" in periods,
        ))
    session.commit()
    return doctor


@pytest.fixture
def seed_doctor():
    """Seeding function for tests that manage their own sessions"""
    return _seed_doctor


@pytest.fixture
def make_doctor(session):
    """Factory: hospital + doctor working the given periods per weekday"""
    def _make(**kwargs) -> DoctorProfile:
        return _seed_doctor(session, **kwargs)
    return _make


@pytest.fixture
def doctor(make_doctor) -> DoctorProfile:
    """Doctor working Monday mornings (06:00-14:00) in 30 minute slots"""
    return make_doctor()


@pytest.fixture
def client(engine):
    from main import app

    def get_session_override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = get_session_override
    yield TestClient(app)
    app.dependency_overrides.clear()
