"""FastAPI application entry point."""

import logging
import os
import threading

import sqlalchemy
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from scenerun.capabilities import resolve_capabilities
from scenerun.config import Settings, settings
from scenerun.database import SessionLocal, engine
from scenerun.errors import OrchestratorError
from scenerun.orchestrator.context import OrchestratorContext
from scenerun.routes import runs, webhooks
from scenerun.services.audio_client import AudioJobClient
from scenerun.services.blob_store import LocalBlobStore
from scenerun.services.format_client import FormatClient
from scenerun.services.image_client import ImageClient
from scenerun.services.tasks import ThreadTaskRunner
from scenerun.services.video_build_client import VideoBuildClient

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

ROOT_DIR = os.path.dirname(os.path.dirname(__file__))

# Create FastAPI app
app = FastAPI(
    title="SceneRun",
    description="Run orchestrator for the text to scenes to images to narration pipeline",
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
app.include_router(runs.router)
app.include_router(webhooks.router)


@app.exception_handler(OrchestratorError)
async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"error": {"code": "INVALID_REQUEST", "message": "Invalid request", "details": {"errors": errors}}},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "message": "Internal error", "details": {}}},
    )


def build_context(config: Settings = settings) -> OrchestratorContext:
    """Wire collaborators once; handlers receive them through the context."""
    return OrchestratorContext(
        settings=config,
        capabilities=resolve_capabilities(engine, config),
        session_factory=SessionLocal,
        tasks=ThreadTaskRunner(),
        blob_store=LocalBlobStore(config.BLOB_STORE_ROOT),
        format_client=FormatClient(config),
        image_client=ImageClient(config),
        audio_client=AudioJobClient(config),
        video_build_client=VideoBuildClient(config),
    )


def run_migrations():
    """Upgrade to head unless the schema is already there."""
    if sqlalchemy.inspect(engine).has_table("runs"):
        logger.info("Database tables already exist, skipping migrations")
        return

    from alembic import command
    from alembic.config import Config

    logger.info("Running database migrations...")
    alembic_cfg = Config(os.path.join(ROOT_DIR, "alembic.ini"))
    alembic_cfg.set_main_option("script_location", os.path.join(ROOT_DIR, "alembic"))
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed successfully")


# Sweeper thread management
sweeper_thread = None
sweeper_stop_event = threading.Event()


def run_sweeper_loop():
    """Run the sweeper loop in a background thread."""
    from scenerun.worker import worker_loop

    logger.info("Starting background sweeper thread")
    worker_loop(sweeper_stop_event)


@app.on_event("startup")
async def startup_event():
    """Migrate, resolve capabilities and start the optional sweeper."""
    global sweeper_thread
    logger.info("Starting application...")

    run_migrations()
    app.state.context = build_context()

    if settings.SWEEPER_ENABLED:
        sweeper_thread = threading.Thread(target=run_sweeper_loop, daemon=True)
        sweeper_thread.start()
        logger.info("Background sweeper thread started")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the sweeper when the app shuts down."""
    logger.info("Shutting down application...")
    sweeper_stop_event.set()

    if sweeper_thread and sweeper_thread.is_alive():
        sweeper_thread.join(timeout=10)
        logger.info("Background sweeper thread stopped")


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "healthy"}
