"""
Exam Integrity API: Main Application
FastAPI application for timed exam attempts: start/resume, autosave,
anti-cheat event capture, submission and scoring.
"""

from dotenv import load_dotenv
load_dotenv()

import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database.database import engine, Base, SessionLocal
from database.models import User, UserRole
from auth.security import hash_password
from routers import auth, exam_attempts, anti_cheat
from routers.deps import get_rate_limiter
from services.errors import ExamServiceError
from services.rate_limiter import RATE_LIMIT_SWEEP_SECONDS, run_sweeper

# ─── Config ────────────────────────────────────────────────────────────────────

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@org.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("exam_api")


def _seed_defaults():
    """Create the default admin account if no users exist."""
    db = SessionLocal()
    try:
        if db.query(User).count() == 0:
            db.add(User(
                email=ADMIN_EMAIL,
                hashed_password=hash_password(ADMIN_PASSWORD),
                full_name="Admin",
                role=UserRole.ADMIN.value,
                is_active=True,
            ))
            db.commit()
            logger.info("Default admin created: %s", ADMIN_EMAIL)
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create tables, seed defaults, start the rate-limit sweeper."""
    Base.metadata.create_all(bind=engine)
    _seed_defaults()
    sweeper = asyncio.create_task(run_sweeper(get_rate_limiter(), RATE_LIMIT_SWEEP_SECONDS))
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper


app = FastAPI(
    title="Exam Integrity API",
    description="Exam attempt lifecycle, autosave, anti-cheat logging and scoring",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ExamServiceError)
async def exam_service_error_handler(request: Request, exc: ExamServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.error_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


# ─── Routers ───────────────────────────────────────────────────────────────────

app.include_router(auth.router)             # /auth/*
app.include_router(exam_attempts.router)    # /exam-attempts/*
app.include_router(anti_cheat.router)       # /exam-attempts/anti-cheat, /exam-attempts/*/anti-cheat-events


@app.get("/")
def root():
    return {
        "name": "Exam Integrity API",
        "version": "1.0.0",
        "endpoints": {
            "docs": "/docs",
            "auth": "/auth",
            "exam_attempts": "/exam-attempts",
        },
    }


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "exam-integrity-api"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
