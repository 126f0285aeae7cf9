"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from voicecal.api import voice_jobs, webhooks
from voicecal.celery_app import app as celery_app
from voicecal.config import get_settings
from voicecal.services.context import init_resources, shutdown_resources

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown events."""
    init_resources(settings, celery_app)
    yield
    shutdown_resources()


app = FastAPI(
    title="Voice Calendar API",
    description="Turns WhatsApp voice notes into calendar actions",
    version="0.1.0",
    lifespan=lifespan,
    # Interactive docs in development only
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
)

# Register routers
app.include_router(webhooks.router)
app.include_router(voice_jobs.router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "environment": settings.environment}
