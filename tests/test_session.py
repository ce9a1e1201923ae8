import asyncio

import pytest

from core.deck import Deck
from core.exceptions import InvalidMember, InvalidVote, MemberNotFound
from core.session import Addressing, RoomPhase, RoomSession, Snapshot


async def seeded_room():
    session = RoomSession("42")
    await session.join("A", "Alice", "c1")
    await session.join("B", "Bob", "c2")
    return session


@pytest.mark.asyncio
async def test_join_produces_welcome_and_member_joined():
    session = RoomSession("42")
    result = await session.join("A", "Alice", "c1")

    welcome, joined = result.deliveries
    assert welcome.addressing is Addressing.UNICAST
    assert welcome.origin == "c1"
    assert welcome.event.type == "welcome"
    assert welcome.event.message == "Welcome to room 42, Alice"
    assert welcome.event.snapshot["members"]["A"]["displayName"] == "Alice"
    assert joined.addressing is Addressing.OTHERS
    assert joined.event.member_id == "A"
    assert joined.event.display_name == "Alice"
    assert result.snapshot.version == 1
    assert result.snapshot.phase is RoomPhase.ACTIVE


@pytest.mark.asyncio
async def test_repeated_join_keeps_single_entry_and_vote():
    session = RoomSession("42")
    await session.join("u1", "Alice", "c1")
    await session.vote("u1", "5")
    for n in range(5):
        result = await session.join("u1", f"Alice {n}", "c1")

    snapshot = result.snapshot
    assert list(snapshot.members) == ["u1"]
    assert snapshot.members["u1"].display_name == "Alice 4"
    assert snapshot.members["u1"].vote == "5"
    assert snapshot.members["u1"].connections == {"c1"}


@pytest.mark.asyncio
async def test_join_requires_member_id():
    session = RoomSession("42")
    with pytest.raises(InvalidMember):
        await session.join("", "Nobody", "c1")
    assert session.version == 0


@pytest.mark.asyncio
async def test_rejoin_without_name_keeps_display_name():
    session = RoomSession("42")
    await session.join("u1", "Alice", "c1")
    result = await session.join("u1", None, "c2")

    assert result.snapshot.members["u1"].display_name == "Alice"
    welcome, joined = result.deliveries
    assert welcome.event.message == "Welcome to room 42, Alice"
    assert joined.event.display_name == "Alice"


@pytest.mark.asyncio
async def test_blank_display_name_falls_back_to_member_id():
    session = RoomSession("42")
    result = await session.join("u1", "   ", None)
    assert result.snapshot.members["u1"].display_name == "u1"


@pytest.mark.asyncio
async def test_estimation_round():
    session = await seeded_room()
    await session.vote("A", "5")
    await session.vote("B", "8")

    revealed = await session.reveal()
    assert revealed.deliveries[0].event.votes == {"A": "5", "B": "8"}
    assert revealed.snapshot.phase is RoomPhase.REVEALED

    reset = await session.reset()
    assert reset.snapshot.revealed is False
    assert reset.snapshot.votes == {"A": None, "B": None}

    revealed_again = await session.reveal()
    assert revealed_again.deliveries[0].event.votes == {"A": None, "B": None}


@pytest.mark.asyncio
async def test_vote_not_in_deck_is_rejected_without_change():
    session = await seeded_room()
    await session.vote("A", "5")
    before = session.snapshot()

    with pytest.raises(InvalidVote):
        await session.vote("A", "7")

    after = session.snapshot()
    assert after.members["A"].vote == "5"
    assert after.version == before.version


@pytest.mark.asyncio
async def test_vote_from_unknown_member_is_rejected():
    session = await seeded_room()
    with pytest.raises(MemberNotFound):
        await session.vote("Z", "5")
    assert session.version == 2


@pytest.mark.asyncio
async def test_vote_cast_is_broadcast_without_value():
    session = await seeded_room()
    result = await session.vote("A", "13", "c1")
    delivery = result.deliveries[0]
    assert delivery.addressing is Addressing.ALL
    payload = delivery.event.payload()
    assert payload["hasVoted"] is True
    assert "13" not in payload.values()


@pytest.mark.asyncio
async def test_public_view_hides_votes_until_reveal():
    session = await seeded_room()
    await session.vote("A", "5")
    public = session.snapshot().public()
    assert public["members"]["A"] == {"displayName": "Alice", "online": True, "hasVoted": True, "vote": None}
    assert public["members"]["B"]["hasVoted"] is False

    await session.reveal()
    public = session.snapshot().public()
    assert public["members"]["A"]["vote"] == "5"
    assert public["members"]["B"]["vote"] is None


@pytest.mark.asyncio
async def test_reveal_is_idempotent_but_versioned():
    session = await seeded_room()
    await session.vote("A", "3")
    first = await session.reveal()
    second = await session.reveal()
    assert first.deliveries[0].event.votes == second.deliveries[0].event.votes
    assert second.snapshot.version == first.snapshot.version + 1


@pytest.mark.asyncio
async def test_vote_after_reveal_waits_for_next_reveal():
    session = await seeded_room()
    await session.vote("A", "5")
    await session.reveal()

    result = await session.vote("A", "8")
    assert result.snapshot.members["A"].vote == "8"
    assert result.snapshot.revealed_votes == {"A": "5", "B": None}
    assert result.snapshot.public()["members"]["A"]["vote"] == "5"

    again = await session.reveal()
    assert again.deliveries[0].event.votes == {"A": "8", "B": None}


@pytest.mark.asyncio
async def test_queued_mutations_apply_one_at_a_time_in_version_order():
    committed = []
    session = RoomSession("42", ready=False, on_commit=committed.append)
    members = [f"m{n}" for n in range(40)]
    deck = list(session.deck)

    # Everything queues behind the closed session, then contends for the lock at once
    joins = [asyncio.create_task(session.join(m, m, f"c-{m}")) for m in members]
    votes = [asyncio.create_task(session.vote(m, deck[n % len(deck)])) for n, m in enumerate(members)]
    await asyncio.sleep(0)
    assert session.version == 0
    session.hydrate(None)
    await asyncio.gather(*joins, *votes)

    snapshot = session.snapshot()
    assert snapshot.votes == {m: deck[n % len(deck)] for n, m in enumerate(members)}
    assert snapshot.version == len(members) * 2
    assert [result.snapshot.version for result in committed] == list(range(1, len(members) * 2 + 1))


@pytest.mark.asyncio
async def test_cancelled_before_apply_leaves_no_trace():
    committed = []
    session = RoomSession("42", ready=False, on_commit=committed.append)
    pending = asyncio.create_task(session.join("A", "Alice", "c1"))
    await asyncio.sleep(0)
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending

    session.hydrate(None)
    assert session.version == 0
    assert session.snapshot().members == {}
    assert committed == []


@pytest.mark.asyncio
async def test_versions_strictly_increase():
    session = RoomSession("42")
    versions = []
    versions.append((await session.join("A", "Alice", "c1")).snapshot.version)
    versions.append((await session.vote("A", "1")).snapshot.version)
    versions.append((await session.reveal()).snapshot.version)
    versions.append((await session.reset()).snapshot.version)
    versions.append((await session.leave_connection("c1", "A")).snapshot.version)
    assert versions == sorted(set(versions))


@pytest.mark.asyncio
async def test_leave_connection_keeps_member_and_vote():
    session = RoomSession("42")
    await session.join("u1", "Alice", "c1")
    await session.join("u1", "Alice", "c2")
    await session.vote("u1", "2")

    result = await session.leave_connection("c1", "u1")
    assert result.deliveries[0].event.online is True
    assert result.snapshot.members["u1"].connections == {"c2"}

    result = await session.leave_connection("c2", "u1")
    member = result.snapshot.members["u1"]
    assert member.online is False
    assert member.vote == "2"
    assert result.deliveries[0].event.online is False

    assert await session.leave_connection("c2", "u1") is None
    assert await session.leave_connection("c9", "ghost") is None


@pytest.mark.asyncio
async def test_mutation_writes_are_field_scoped():
    session = await seeded_room()
    result = await session.vote("A", "5")
    paths = [write.path for write in result.writes]
    assert paths == ["members.A.vote", "version", "updatedAt"]


@pytest.mark.asyncio
async def test_custom_deck():
    session = RoomSession("shirts", deck=Deck(["S", "M", "L"]))
    await session.join("A", "Alice", None)
    await session.vote("A", "M")
    with pytest.raises(InvalidVote):
        await session.vote("A", "5")


@pytest.mark.asyncio
async def test_hydrate_only_applies_to_fresh_session():
    source = await seeded_room()
    await source.vote("A", "5")
    await source.reveal()
    stored = Snapshot.from_document("42", source.snapshot().to_document())

    fresh = RoomSession("42", ready=False)
    assert fresh.is_ready is False
    assert fresh.hydrate(stored) is True
    assert fresh.is_ready is True
    snapshot = fresh.snapshot()
    assert snapshot.version == source.version
    assert snapshot.revealed_votes == {"A": "5", "B": None}
    assert all(not member.online for member in snapshot.members.values())

    busy = await seeded_room()
    assert busy.hydrate(stored) is False
    assert busy.version == 2


@pytest.mark.asyncio
async def test_mutations_wait_for_hydration():
    session = RoomSession("42", ready=False)
    pending = asyncio.create_task(session.join("A", "Alice", "c1"))
    await asyncio.sleep(0)
    assert not pending.done()

    session.hydrate(None)
    result = await pending
    assert result.snapshot.version == 1


def test_document_round_trip_keeps_layout():
    document = {
        "members": {"A": {"displayName": "Alice", "vote": "5"}, "B": {"displayName": "Bob", "vote": None}},
        "revealed": False,
        "version": 4,
        "updatedAt": "2026-01-02T03:04:05+00:00",
    }
    snapshot = Snapshot.from_document("42", document)
    rendered = snapshot.to_document()
    assert rendered["members"] == document["members"]
    assert rendered["revealed"] is False
    assert rendered["version"] == 4
    assert rendered["updatedAt"] == "2026-01-02T03:04:05+00:00"
