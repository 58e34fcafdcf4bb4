from unittest.mock import AsyncMock, patch

import pytest

from donorlink.db.record_store import InMemoryRecordStore
from donorlink.models.alert_delivery import DeliveryChannel

from factories import FakeGateway


@pytest.fixture(autouse=True)
def no_socketio_broadcasts():
    """Keep lifecycle broadcasts off the Redis bus."""
    with patch("donorlink.services.alert_service.broadcast_alert_state", new=AsyncMock()) as mock:
        yield mock


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def channels():
    return [DeliveryChannel.PUSH, DeliveryChannel.SMS]
