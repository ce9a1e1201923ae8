from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============ Inbound messages ============

# Identifiers and names are trimmed; vote values are matched against the deck as sent
Identifier = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Trimmed = Annotated[str, StringConstraints(strip_whitespace=True)]


class InboundMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    room_id: Identifier = Field(alias="roomId")


class JoinRoomMessage(InboundMessage):
    type: Literal["join-room"]
    member_id: Identifier = Field(alias="memberId")
    display_name: Trimmed = Field(alias="displayName", default="")


class VoteMessage(InboundMessage):
    type: Literal["vote"]
    member_id: Identifier = Field(alias="memberId")
    value: str


class RevealMessage(InboundMessage):
    type: Literal["reveal"]


class ResetMessage(InboundMessage):
    type: Literal["reset"]


AnyInboundMessage = Annotated[
    Union[JoinRoomMessage, VoteMessage, RevealMessage, ResetMessage],
    Field(discriminator="type"),
]

inbound_message_adapter = TypeAdapter(AnyInboundMessage)


def parse_inbound_message(data: Any):
    """Validate a decoded JSON payload into one of the inbound message models.

    Raises pydantic.ValidationError for anything that is not a known message shape.
    """
    return inbound_message_adapter.validate_python(data)


# ============ Outbound events ============

class OutboundEvent(BaseModel):
    """Base for everything pushed to connections.

    Every payload carries the room version it was produced at so clients can
    drop stale or duplicated deliveries.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: str
    room_id: str = Field(alias="roomId")
    version: int
    timestamp: str = Field(default_factory=utc_now_iso)

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class WelcomeEvent(OutboundEvent):
    type: Literal["welcome"] = "welcome"
    message: str
    snapshot: Dict[str, Any]


class MemberJoinedEvent(OutboundEvent):
    type: Literal["member-joined"] = "member-joined"
    member_id: str = Field(alias="memberId")
    display_name: str = Field(alias="displayName")


class VoteCastEvent(OutboundEvent):
    type: Literal["vote-cast"] = "vote-cast"
    member_id: str = Field(alias="memberId")
    has_voted: bool = Field(alias="hasVoted")


class RevealedEvent(OutboundEvent):
    type: Literal["revealed"] = "revealed"
    votes: Dict[str, Optional[str]]


class ResetEvent(OutboundEvent):
    type: Literal["reset"] = "reset"


class PresenceEvent(OutboundEvent):
    type: Literal["presence"] = "presence"
    member_id: str = Field(alias="memberId")
    online: bool


class SyncEvent(OutboundEvent):
    """Change made by another instance, relayed from the store's change channel."""
    type: Literal["sync"] = "sync"
    path: str
    value: Any = None
    source: str


class ClosedEvent(OutboundEvent):
    type: Literal["closed"] = "closed"
    message: str


class ErrorEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: Literal["error"] = "error"
    code: str
    detail: Any
    room_id: Optional[str] = Field(alias="roomId", default=None)
    timestamp: str = Field(default_factory=utc_now_iso)

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
