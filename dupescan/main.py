"""FastAPI application entry point."""

import logging
import os
import threading

import sqlalchemy
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dupescan.config import settings
from dupescan.routes import analyses, jobs, repositories
from dupescan.services.github_client import GitHubSession
from dupescan.services.progress import JobEventBus

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Dupescan",
    description="Duplicate issue detection for GitHub repositories",
    version="0.1.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(repositories.router)
app.include_router(analyses.router)
app.include_router(jobs.router)

# Shared GitHub credential context and job change notifications
app.state.github_session = GitHubSession(settings.GITHUB_TOKEN)
app.state.job_events = JobEventBus()

# Worker thread management
worker_thread = None
worker_stop_event = threading.Event()


def run_worker_loop(worker):
    """Run the worker loop in a background thread."""
    from dupescan.worker import worker_loop
    logger.info("Starting background worker thread")
    worker_loop(worker_stop_event, worker=worker)


def run_migrations():
    """Run migrations unless the analysis tables already exist."""
    from dupescan.database import SessionLocal

    db = SessionLocal()
    try:
        inspector = sqlalchemy.inspect(db.get_bind())
        table_exists = inspector.has_table("analysis_jobs")
    finally:
        db.close()

    if table_exists:
        logger.info("Database tables already exist, skipping migrations")
        return

    logger.info("Running database migrations...")
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config(os.path.join(os.path.dirname(os.path.dirname(__file__)), "alembic.ini"))
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed successfully")


@app.on_event("startup")
async def startup_event():
    """Start the background worker when the app starts."""
    global worker_thread
    logger.info("Starting application...")

    try:
        run_migrations()
    except Exception as e:
        logger.error(f"Startup database check/migration error: {e}")
        logger.info("Continuing startup - assuming database is ready")

    app.state.job_events.install()

    from dupescan.worker import Worker
    worker = Worker()
    app.state.worker = worker

    logger.info("Starting background worker thread...")
    worker_thread = threading.Thread(target=run_worker_loop, args=(worker,), daemon=True)
    worker_thread.start()
    logger.info("Background worker thread started")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the background worker when the app shuts down."""
    logger.info("Shutting down application...")

    # Signal worker to stop
    worker_stop_event.set()
    worker = getattr(app.state, "worker", None)
    if worker is not None:
        worker.wake()

    # Wait for worker thread to finish (with timeout)
    if worker_thread and worker_thread.is_alive():
        worker_thread.join(timeout=10)
        logger.info("Background worker thread stopped")

    app.state.job_events.uninstall()


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "name": "Dupescan",
        "version": "0.1.0",
        "status": "running",
    }
