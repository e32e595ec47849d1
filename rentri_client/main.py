"""FastAPI application exposing the Registry client operations."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from rentri_client.api import rentri
from rentri_client.config import get_settings
from rentri_client.core.token_signer import TokenSigner
from rentri_client.db.database import init_db
from rentri_client.logging_config import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager."""
    settings = get_settings()
    logger.info(f"Starting RENTRI client (default environment: {settings.rentri_default_environment})")
    init_db()
    app.state.token_signer = TokenSigner()
    yield
    logger.info("Shutting down RENTRI client...")


def create_app() -> FastAPI:
    configure_logging(get_settings().log_level)
    application = FastAPI(
        title="RENTRI Client",
        description="Signed submission and reconciliation of waste movements with the RENTRI registry",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.include_router(rentri.router, prefix="/api/rentri", tags=["RENTRI"])

    @application.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return application


app = create_app()
