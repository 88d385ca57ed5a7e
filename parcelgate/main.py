"""
ParcelGate
FastAPI application entry point

Exposes the carrier webhook endpoints. Hosts that want inline tracking
emails set app.state.track_lookup (and optionally
app.state.notification_sender) before serving requests.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from parcelgate.api.routes import webhooks
from parcelgate.core.config import settings
from parcelgate.core.database import dispose_engine
from parcelgate.core.redis_client import close_redis
from parcelgate.services.email_provider import close_sender, default_sender

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{settings.APP_NAME} starting ({settings.ENVIRONMENT})")

    # One sender for the app's lifetime; a host-supplied sender is left to the host
    owned_sender = None
    if getattr(app.state, "notification_sender", None) is None:
        owned_sender = default_sender()
        app.state.notification_sender = owned_sender

    yield

    # Close shared connections on shutdown
    if owned_sender is not None:
        await close_sender(owned_sender)
        app.state.notification_sender = None
    await close_redis()
    await dispose_engine()
    logger.info("Shared connections closed")


def create_app() -> FastAPI:
    app = FastAPI(
        lifespan=lifespan,
        title=settings.APP_NAME,
        description="Carrier rating, labels and tracking webhooks",
    )
    app.include_router(webhooks.router, tags=["Webhooks"])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "environment": settings.ENVIRONMENT}

    return app


app = create_app()
