"""
FastAPI application for the UME messaging service.
This module sets up the API server with routes, middleware, and error handling.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from prometheus_fastapi_instrumentator import Instrumentator
from prometheus_fastapi_instrumentator import metrics as instrumentator_metrics

from ume_messaging.core.config import Settings, get_settings
from ume_messaging.core.error_handlers import (
    base_exception_handler,
    unhandled_exception_handler,
)
from ume_messaging.core.exceptions import BaseAppException
from ume_messaging.middleware import ActivityTrackingMiddleware
from ume_messaging.realtime.relay import ChangeRelay
from ume_messaging.routes import conversations, health, messages, notifications, realtime
from ume_messaging.services.accounts.user_repository import UserRepository
from ume_messaging.services.email.transport import BrevoEmailTransport
from ume_messaging.services.listings.listing_repository import ListingRepository
from ume_messaging.services.messaging.conversation_repository import (
    ConversationRepository,
)
from ume_messaging.services.messaging.message_repository import MessageRepository
from ume_messaging.services.messaging.message_service import MessageService
from ume_messaging.services.notifications.email_counter import DailyEmailCounter
from ume_messaging.services.notifications.message_notifications import (
    MessageNotificationDispatcher,
)
from ume_messaging.services.notifications.notification_repository import (
    NotificationRepository,
)
from ume_messaging.services.notifications.notification_service import (
    NotificationService,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger("ume_messaging.main")


async def build_services(app: FastAPI, settings: Settings) -> None:
    """Create repositories and services and attach them to ``app.state``."""
    settings.ensure_data_dirs()
    db_path = settings.MESSAGING_DB_PATH

    message_repository = MessageRepository(db_path)
    conversation_repository = ConversationRepository(db_path)
    notification_repository = NotificationRepository(db_path)
    user_repository = UserRepository(db_path, settings.ACTIVITY_DEBOUNCE_SECONDS)
    listing_repository = ListingRepository(db_path)
    email_counter = DailyEmailCounter(db_path)
    for repository in (
        message_repository,
        conversation_repository,
        notification_repository,
        user_repository,
        listing_repository,
        email_counter,
    ):
        await repository.initialize()

    relay = ChangeRelay()
    email_transport = BrevoEmailTransport(settings)
    notification_service = NotificationService(notification_repository)
    dispatcher = MessageNotificationDispatcher(
        notification_service=notification_service,
        user_repository=user_repository,
        conversation_repository=conversation_repository,
        email_counter=email_counter,
        email_transport=email_transport,
        settings=settings,
    )

    app.state.settings = settings
    app.state.relay = relay
    app.state.email_transport = email_transport
    app.state.user_repository = user_repository
    app.state.listing_repository = listing_repository
    app.state.notification_service = notification_service
    app.state.message_service = MessageService(
        message_repository=message_repository,
        conversation_repository=conversation_repository,
        user_repository=user_repository,
        listing_repository=listing_repository,
        relay=relay,
        settings=settings,
        dispatcher=dispatcher,
    )
    if settings.EMAIL_TEST_MODE:
        logger.info("Email test mode enabled, emails are written to the test log")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Application startup...")
    await build_services(app, app.state.settings)

    yield

    # Shutdown
    logger.info("Application shutdown...")
    await app.state.message_service.wait_for_background_tasks()
    await app.state.email_transport.close()
    app.state.relay.clear()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application.

    Passing ``settings`` pins them for both the lifespan and the
    ``get_settings`` dependency, which is how tests isolate their database.
    """
    settings = settings or get_settings()
    app = FastAPI(
        title=settings.PROJECT_NAME,
        docs_url="/api/docs",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.dependency_overrides[get_settings] = lambda: settings

    # Toggle credentials off when wildcard is used (Starlette forbids wildcard + credentials)
    origins = settings.CORS_ORIGINS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False if origins == ["*"] else True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ActivityTrackingMiddleware)

    # DON'T call .expose() - /metrics is served below from the default registry
    instrumentator = Instrumentator(
        should_group_status_codes=False,
        should_ignore_untemplated=True,
        should_respect_env_var=False,
        excluded_handlers=["/health", "/healthcheck", "/metrics"],
    )
    instrumentator.add(instrumentator_metrics.default())
    instrumentator.instrument(app)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthcheck")
    async def healthcheck():
        return {"status": "healthy"}

    app.include_router(health.router, tags=["Health"])
    app.include_router(messages.router)
    app.include_router(conversations.router)
    app.include_router(notifications.router)
    app.include_router(realtime.router, tags=["Realtime"])

    # Register specific application exceptions first
    app.add_exception_handler(BaseAppException, base_exception_handler)  # type: ignore[arg-type]
    # Then register generic exception handler as fallback
    app.add_exception_handler(Exception, unhandled_exception_handler)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    # Bind to 0.0.0.0 only in DEBUG mode (container/development)
    host = "0.0.0.0" if settings.DEBUG else "127.0.0.1"

    uvicorn.run(
        "ume_messaging.main:app",
        host=host,
        port=8000,
        reload=settings.DEBUG,
    )
