from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
import os
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Load environment variables from .env file FIRST
load_dotenv()

from database import create_db_and_tables
import models  # Import models to register them with SQLModel
from errors import SchedulingError
from routers import appointments, doctors, hospitals, queue
from middleware.request_logger import RequestLoggingMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from validators.business_rules import RATE_LIMIT_ENABLED


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()
    yield


# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)

app = FastAPI(
    title="Clinic Scheduling API",
    description="Slot generation, booking and live patient queues for clinic doctors",
    version="0.1.0",
    lifespan=lifespan
)

# Set up rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.code},
    )


# CORS configuration
origins = [
    "http://localhost:3000",  # Development frontend
    "http://localhost:8000",  # Development API
    os.getenv("FRONTEND_URL", "http://localhost:3000"),  # Production frontend from env
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "Accept", "Origin"],
)

app.add_middleware(RequestLoggingMiddleware)

# Include routers
app.include_router(hospitals.router)
app.include_router(doctors.router)
app.include_router(appointments.router)
app.include_router(queue.router)


@app.get("/")
def read_root():
    return {"message": "Clinic Scheduling API"}


@app.get("/health")
def health_check():
    return {"status": "healthy"}
