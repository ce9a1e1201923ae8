import asyncio

import pytest

from core.persistence import InMemoryPersistence, PersistenceWriter, document_from_fields
from core.session import FieldWrite


def test_document_from_fields_nests_members():
    document = document_from_fields({
        "members.u1.displayName": "Alice",
        "members.u1.vote": "5",
        "members.team.lead.vote": None,
        "revealed": False,
        "version": 3,
    })
    assert document == {
        "members": {
            "u1": {"displayName": "Alice", "vote": "5"},
            "team.lead": {"vote": None},
        },
        "revealed": False,
        "version": 3,
    }


@pytest.mark.asyncio
async def test_merge_is_field_scoped():
    store = InMemoryPersistence(instance_id="x")
    await store.merge_field("42", "members.A.vote", "5", 3)
    await store.merge_field("42", "members.B.vote", "8", 4)
    await store.merge_field("42", "members.A.displayName", "Alice", 5)

    snapshot = await store.load("42")
    assert snapshot.members["A"].vote == "5"
    assert snapshot.members["A"].display_name == "Alice"
    assert snapshot.members["B"].vote == "8"
    assert await store.load("unknown") is None


@pytest.mark.asyncio
async def test_subscribe_and_unsubscribe():
    store = InMemoryPersistence(instance_id="x")
    notices = []

    async def on_change(notice):
        notices.append(notice)

    unsubscribe = await store.subscribe("42", on_change)
    await store.merge_field("42", "revealed", True, 7)
    await unsubscribe()
    await store.merge_field("42", "revealed", False, 8)

    assert notices == [{"instance": "x", "roomId": "42", "path": "revealed", "value": True, "version": 7}]


@pytest.mark.asyncio
async def test_writer_applies_writes_in_order():
    store = InMemoryPersistence(instance_id="x")
    writer = PersistenceWriter(store, max_retries=0, base_delay=0)
    writer.submit("42", [FieldWrite("members.A.vote", "1"), FieldWrite("version", 1)], 1)
    writer.submit("42", [FieldWrite("members.A.vote", "2"), FieldWrite("version", 2)], 2)
    writer.submit("42", [], 3)
    await writer.flush()

    assert store.fields("42") == {"members.A.vote": "2", "version": 2}
    await writer.close()


@pytest.mark.asyncio
async def test_delete_removes_document():
    store = InMemoryPersistence(instance_id="x")
    await store.merge_field("42", "version", 1, 1)
    await store.delete("42")
    assert store.fields("42") == {}


class GatedStore(InMemoryPersistence):
    def __init__(self):
        super().__init__(instance_id="x")
        self.gate = asyncio.Event()
        self.calls = []

    async def merge_field(self, room_id, path, value, version):
        await self.gate.wait()
        self.calls.append((path, value))
        await super().merge_field(room_id, path, value, version)


@pytest.mark.asyncio
async def test_pending_writes_are_coalesced_per_field():
    store = GatedStore()
    writer = PersistenceWriter(store, max_retries=0, base_delay=0)
    writer.submit("42", [FieldWrite("version", 0)], 0)
    await asyncio.sleep(0)

    for n in range(1, 101):
        writer.submit("42", [FieldWrite("members.A.vote", str(n % 5)), FieldWrite("version", n)], n)
    assert len(writer) == 2
    assert writer.coalesced == 198

    store.gate.set()
    await writer.flush()
    assert store.fields("42") == {"members.A.vote": "0", "version": 100}
    assert len(store.calls) == 3
    await writer.close()
