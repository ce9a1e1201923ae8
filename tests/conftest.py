import asyncio
from collections import defaultdict

import pytest

from core.persistence import InMemoryPersistence, PersistenceWriter
from core.service import RoomService


class RecordingTransport:
    """Collects every payload per connection; connections in ``broken`` fail to send."""

    def __init__(self):
        self.sent = defaultdict(list)
        self.broken = set()

    async def send(self, connection_id, payload):
        if connection_id in self.broken:
            raise ConnectionError(f"{connection_id} is gone")
        self.sent[connection_id].append(payload)

    def types(self, connection_id):
        return [payload["type"] for payload in self.sent[connection_id]]

    def last(self, connection_id):
        return self.sent[connection_id][-1]

    def clear(self):
        self.sent.clear()


class SlowTransport(RecordingTransport):
    """Yields on every send; sends to connections in ``slow`` wait until ``release`` is set."""

    def __init__(self, slow=()):
        super().__init__()
        self.slow = set(slow)
        self.release = asyncio.Event()
        self.release.set()

    async def send(self, connection_id, payload):
        if connection_id in self.slow:
            await self.release.wait()
        await asyncio.sleep(0)
        await super().send(connection_id, payload)


def store_view(store, instance_id):
    """Another handle on the same in-memory data whose change notices carry a different instance id."""
    view = InMemoryPersistence(instance_id=instance_id)
    view._lock = store._lock
    view._rooms = store._rooms
    view._subscribers = store._subscribers
    return view


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def service(transport):
    return RoomService(transport)


@pytest.fixture
def store():
    return InMemoryPersistence(instance_id="test-instance")


@pytest.fixture
def persisted_service(transport, store):
    return RoomService(
        transport,
        persistence=store,
        instance_id="test-instance",
        writer=PersistenceWriter(store, max_retries=2, base_delay=0),
    )
