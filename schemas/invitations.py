from pydantic import BaseModel
from typing import Optional

PENDING = "pending"
ACCEPTED = "accepted"
DECLINED = "declined"


class Invitation(BaseModel):
    id: str
    room_id: str
    inviter_id: str
    invitee_id: Optional[str] = None
    invitee_email: Optional[str] = None
    status: str = PENDING
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def is_for(self, user_id: str, email: Optional[str]) -> bool:
        if self.invitee_id and self.invitee_id == user_id:
            return True
        if self.invitee_email and email:
            return self.invitee_email.lower() == email.lower()
        return False


class ResolvedInvitation(Invitation):
    """An invitation with the names a person needs to decide on it."""

    room_name: str
    inviter_name: str


class RespondRequest(BaseModel):
    accept: bool

class RespondResponse(BaseModel):
    invitation_id: str
    status: str
    room_id: str
