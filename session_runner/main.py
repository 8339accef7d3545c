"""Session Runner - Main Application

HTTP front end for isolated script sessions.

Features:
- Run script text or a script file in a fresh, ephemeral session
- Required extension modules provisioned from the registry per session
- All output/error/warning/verbose/debug/progress channels returned
- Session directories always torn down
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from session_runner import __version__
from session_runner.auth import verify_api_key
from session_runner.config import settings
from session_runner.routes import execute, health

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s | %(name)s | %(levelname)s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    logger.info("=" * 60)
    logger.info(f"Session Runner v{__version__} starting...")
    logger.info("=" * 60)

    settings.ensure_directories()

    logger.info(f"  Base dir: {settings.BASE_DIR}")
    logger.info(f"  Registry: {settings.REGISTRY_HOST}")
    logger.info(f"  Bootstrap package: {settings.BOOTSTRAP_PACKAGE.name if settings.BOOTSTRAP_PACKAGE else '(none)'}")
    logger.info(f"  Meta package: {settings.META_PACKAGE.name if settings.META_PACKAGE else '(none)'}")
    logger.info(f"  Required packages: {[p.name for p in settings.REQUIRED_PACKAGES]}")
    logger.info(f"  Default trust: {settings.DEFAULT_TRUST.value}")
    logger.info(f"  Execution timeout: {settings.EXECUTION_TIMEOUT}s")
    logger.info(f"  API key: {'***configured***' if settings.API_KEY else 'NOT SET (dev mode)'}")

    yield

    logger.info("Session Runner shutting down")


app = FastAPI(
    title="Session Runner",
    description=(
        "Runs automation scripts in isolated, ephemeral sessions with "
        "their extension modules provisioned from a package registry."
    ),
    version=__version__,
    lifespan=lifespan,
)

# --- PUBLIC ROUTES (no auth) ---
app.include_router(health.router, tags=["Health"])

# --- PROTECTED ROUTES (API key required) ---
app.include_router(
    execute.router,
    prefix="/api",
    tags=["Execute"],
    dependencies=[Depends(verify_api_key)],
)
