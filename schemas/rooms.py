from pydantic import BaseModel, Field
from typing import Optional

from constants import DEFAULT_MAX_USERS
from schemas.invitations import Invitation


class Identity(BaseModel):
    user_id: str
    email: Optional[str] = None


class Profile(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None

    def display_name(self) -> Optional[str]:
        if self.full_name:
            return self.full_name
        if self.email:
            return self.email.split("@")[0]
        return None


class Room(BaseModel):
    id: str
    name: str
    owner_id: str
    max_users: int = DEFAULT_MAX_USERS
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class Member(BaseModel):
    id: str
    room_id: str
    user_id: str
    username: str
    status: str = "active"
    joined_at: Optional[str] = None


class RosterEntry(BaseModel):
    user_id: str
    username: str
    is_owner: bool = False
    is_online: bool = False
    joined_at: Optional[str] = None


class Message(BaseModel):
    id: str
    room_id: str
    user_id: Optional[str] = None
    username: str
    content: str
    is_ai: bool = False
    created_at: Optional[str] = None


class Output(BaseModel):
    id: str
    room_id: str
    user_id: Optional[str] = None
    username: str
    code: str
    output: str
    language: str
    created_at: Optional[str] = None


class TableEvent(BaseModel):
    type: str  # INSERT / UPDATE / DELETE
    table: str
    new: Optional[dict] = None
    old: Optional[dict] = None
    commit_ts: Optional[str] = None

    def row(self) -> Optional[dict]:
        return self.old if self.type == "DELETE" else self.new


class CreateRoomRequest(BaseModel):
    name: str
    username: str
    invite_emails: list[str] = Field(default_factory=list)

class CreateRoomResponse(BaseModel):
    room: Room
    invitations: list[Invitation]

class RoomSummary(BaseModel):
    id: str
    name: str
    owner_id: str
    member_count: int
    username: str

class RoomDetailsResponse(BaseModel):
    room: Room
    roster: list[RosterEntry]
    is_full: bool

class InviteRequest(BaseModel):
    email: str

class LeaveRoomResponse(BaseModel):
    room_id: str
    left: bool

class SendMessageRequest(BaseModel):
    content: str
    username: Optional[str] = None

class ShareOutputRequest(BaseModel):
    code: str
    output: str
    language: str
    username: Optional[str] = None
