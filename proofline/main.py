"""
Proofline HTTP service.

Wires the bake routes, CORS and the background alarm scheduler into one
FastAPI app. Run with ``uvicorn proofline.main:app``.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from proofline.config import settings
from proofline.api.routes import bakes, features
from proofline.jobs.alarm_jobs import start_scheduler, stop_scheduler
from proofline.db.database import SessionLocal, create_tables
from proofline.services.bake_service import get_bake_service
from sqlalchemy import text

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Set by the lifespan; None while background jobs are disabled
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Restore persisted bakes and start alarm delivery around the app's lifetime."""
    global scheduler

    logger.info(f"Proofline starting ({settings.app_name} {settings.app_version})")
    create_tables()

    service = get_bake_service()
    service.restore_active_bakes()
    scheduler = start_scheduler(service)

    yield

    logger.info("Proofline stopping, shutting down alarm delivery")
    if scheduler:
        stop_scheduler(scheduler)
        scheduler = None


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Sourdough bake timeline scheduling and recalibration API",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(bakes.router)
app.include_router(features.router)


def _check_database():
    """Return ``(status, error)`` after a trivial round trip to the database."""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return "healthy", None
    except Exception as exc:
        logger.warning(f"Database check failed: {exc}")
        return "unhealthy", str(exc)
    finally:
        db.close()


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """
    Liveness report for load balancers.

    Always answers 200; a failed database check is reported in the body.
    """
    database, error = _check_database()
    body = {
        "status": database,
        "version": settings.app_version,
        "database": database,
        "alarm_scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
    }
    if error:
        body["database_error"] = error
    return body


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("proofline.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
