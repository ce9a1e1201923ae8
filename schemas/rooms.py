from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Optional

from schemas.events import Identifier


class CastVoteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    member_id: Identifier = Field(alias="memberId")
    value: str

class MemberDetails(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    display_name: str = Field(alias="displayName")
    online: bool
    has_voted: bool = Field(alias="hasVoted")
    vote: Optional[str] = None

class RoomDetailsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")
    members: Dict[str, MemberDetails]
    revealed: bool
    version: int
    created_at: str = Field(alias="createdAt")
    updated_at: str = Field(alias="updatedAt")

class RevealResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")
    votes: Dict[str, Optional[str]]
    version: int

class VersionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")
    version: int

class DeckResponse(BaseModel):
    values: list[str]
