import pytest
from pydantic import ValidationError

from schemas.events import (
    ErrorEvent,
    JoinRoomMessage,
    ResetMessage,
    RevealMessage,
    VoteCastEvent,
    VoteMessage,
    parse_inbound_message,
)


def test_parse_join_room():
    message = parse_inbound_message({"type": "join-room", "roomId": "42", "memberId": "u1", "displayName": "Alice"})
    assert isinstance(message, JoinRoomMessage)
    assert (message.room_id, message.member_id, message.display_name) == ("42", "u1", "Alice")


def test_parse_each_message_type():
    assert isinstance(parse_inbound_message({"type": "vote", "roomId": "42", "memberId": "u1", "value": "5"}), VoteMessage)
    assert isinstance(parse_inbound_message({"type": "reveal", "roomId": "42"}), RevealMessage)
    assert isinstance(parse_inbound_message({"type": "reset", "roomId": "42"}), ResetMessage)


@pytest.mark.parametrize("payload", [
    {"type": "shout", "roomId": "42"},
    {"type": "vote", "roomId": "42", "value": "5"},
    {"type": "join-room", "roomId": "", "memberId": "u1"},
    {"type": "join-room", "roomId": "42", "memberId": "   "},
    {"roomId": "42"},
    ["vote"],
])
def test_malformed_messages_are_rejected(payload):
    with pytest.raises(ValidationError):
        parse_inbound_message(payload)


def test_vote_cast_payload_withholds_value():
    payload = VoteCastEvent(room_id="42", version=3, member_id="u1", has_voted=True).payload()
    assert payload["type"] == "vote-cast"
    assert payload["memberId"] == "u1"
    assert payload["hasVoted"] is True
    assert payload["version"] == 3
    assert "value" not in payload
    assert "timestamp" in payload


def test_error_payload():
    payload = ErrorEvent(code="invalid-vote", detail="nope", room_id="42").payload()
    assert payload == {"type": "error", "code": "invalid-vote", "detail": "nope", "roomId": "42",
                       "timestamp": payload["timestamp"]}


def test_vote_value_is_not_trimmed():
    message = parse_inbound_message({"type": "vote", "roomId": " 42 ", "memberId": " u1 ", "value": " 5 "})
    assert (message.room_id, message.member_id) == ("42", "u1")
    assert message.value == " 5 "
