"""
Pytest configuration and fixtures for the UME messaging API.

This module provides:
- Test settings pointing at a per-test temporary data directory
- A fully wired service stack with a recording email transport
- Identity token helpers and an HTTP test client
"""

from types import SimpleNamespace

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from ume_messaging.core.config import Settings, get_settings
from ume_messaging.models.user import Listing, UserProfile
from ume_messaging.realtime.relay import ChangeRelay
from ume_messaging.services.accounts.user_repository import UserRepository
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
from tests.support import (
    ALICE,
    BOB,
    CAROL,
    LISTING,
    LISTING_TITLE,
    TEST_SECRET,
    RecordingEmailTransport,
    long_ago,
)


@pytest.fixture
def tmp_db_path(tmp_path) -> str:
    """Temporary SQLite database path."""
    return str(tmp_path / "messaging.db")


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings isolated to a temporary data directory."""
    return Settings(
        DEBUG=True,
        ENVIRONMENT="testing",
        DATA_DIR=str(tmp_path),
        IDENTITY_TOKEN_SECRET=TEST_SECRET,
        EMAIL_TEST_MODE=True,
        ACTIVITY_DEBOUNCE_SECONDS=60,
    )


@pytest.fixture
def email_transport() -> RecordingEmailTransport:
    return RecordingEmailTransport()


@pytest_asyncio.fixture
async def stack(test_settings, email_transport):
    """Every repository and service wired against one temporary database.

    Alice and Bob exist with email addresses and were last active two hours
    ago; Carol has no email. One listing is seeded.
    """
    db_path = test_settings.MESSAGING_DB_PATH
    s = SimpleNamespace(settings=test_settings, email_transport=email_transport)
    s.messages = MessageRepository(db_path)
    s.conversations = ConversationRepository(db_path)
    s.notifications = NotificationRepository(db_path)
    s.users = UserRepository(db_path, test_settings.ACTIVITY_DEBOUNCE_SECONDS)
    s.listings = ListingRepository(db_path)
    s.counter = DailyEmailCounter(db_path)
    for repository in (
        s.messages,
        s.conversations,
        s.notifications,
        s.users,
        s.listings,
        s.counter,
    ):
        await repository.initialize()

    await s.users.upsert(
        UserProfile(
            id=ALICE,
            email="alice@uni.edu",
            username="alice",
            display_name="Alice",
            last_active=long_ago(),
        )
    )
    await s.users.upsert(
        UserProfile(
            id=BOB,
            email="bob@uni.edu",
            username="bob",
            display_name="Bob",
            last_active=long_ago(),
        )
    )
    await s.users.upsert(UserProfile(id=CAROL, username="carol", display_name="Carol"))
    await s.listings.upsert(Listing(id=LISTING, title=LISTING_TITLE, seller_id=BOB))

    s.relay = ChangeRelay()
    s.notification_service = NotificationService(s.notifications)
    s.dispatcher = MessageNotificationDispatcher(
        notification_service=s.notification_service,
        user_repository=s.users,
        conversation_repository=s.conversations,
        email_counter=s.counter,
        email_transport=email_transport,
        settings=test_settings,
    )
    s.service = MessageService(
        message_repository=s.messages,
        conversation_repository=s.conversations,
        user_repository=s.users,
        listing_repository=s.listings,
        relay=s.relay,
        settings=test_settings,
        dispatcher=s.dispatcher,
    )
    yield s
    await s.service.wait_for_background_tasks()


async def _seed_profiles(app) -> None:
    await app.state.user_repository.upsert(
        UserProfile(
            id=ALICE,
            email="alice@uni.edu",
            display_name="Alice",
            last_active=long_ago(),
        )
    )
    await app.state.user_repository.upsert(
        UserProfile(
            id=BOB, email="bob@uni.edu", display_name="Bob", last_active=long_ago()
        )
    )
    await app.state.listing_repository.upsert(
        Listing(id=LISTING, title=LISTING_TITLE, seller_id=BOB)
    )


@pytest.fixture
def test_client(test_settings):
    """HTTP client for the application, with the lifespan run against test settings.

    Alice, Bob and the listing are seeded once the lifespan has built the
    repositories.
    """
    from ume_messaging.main import app

    original_settings = app.state.settings
    app.state.settings = test_settings
    app.dependency_overrides[get_settings] = lambda: test_settings
    with TestClient(app) as client:
        client.portal.call(_seed_profiles, app)
        yield client
    app.dependency_overrides[get_settings] = lambda: original_settings
    app.state.settings = original_settings


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: mark test as an integration test")
