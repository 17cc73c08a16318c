from typing import Iterable, List, Tuple

from backend import utc_now_iso
from constants import TABLE_MEMBERS, TABLE_ROOMS, DEFAULT_MAX_USERS, MAX_INITIAL_INVITES
from errors import ValidationError
from invitations import InvitationManager, normalize_email
from logging_config import get_logger
from schemas.invitations import Invitation
from schemas.rooms import Identity, Member, Room, RoomSummary
from store import SessionStore

logger = get_logger(__name__)


class RoomDirectory:
    """Creating rooms and listing the rooms a person belongs to."""

    def __init__(self, store: SessionStore, invitations: InvitationManager):
        self.store = store
        self.invitations = invitations

    async def create_room(
        self,
        identity: Identity,
        name: str,
        username: str,
        invite_emails: Iterable[str] = (),
    ) -> Tuple[Room, List[Invitation]]:
        name = (name or "").strip()
        username = (username or "").strip()
        if not name or not username:
            raise ValidationError("All fields required")

        emails: List[str] = []
        for email in invite_emails:
            email = normalize_email(email)
            if email not in emails:
                emails.append(email)
        if len(emails) > MAX_INITIAL_INVITES:
            raise ValidationError(f"Max {MAX_INITIAL_INVITES} invites allowed")

        existing = await self.store.query_rows(TABLE_ROOMS, Room, eq={"owner_id": identity.user_id, "name": name})
        if existing:
            logger.warning(f"Room creation rejected: {identity.user_id} already owns a room named {name!r}")
            raise ValidationError("Project with same name already exists")

        room = await self.store.insert_row(
            TABLE_ROOMS,
            Room,
            {"name": name, "owner_id": identity.user_id, "max_users": DEFAULT_MAX_USERS},
        )
        await self.store.upsert_row(
            TABLE_MEMBERS,
            Member,
            {
                "room_id": room.id,
                "user_id": identity.user_id,
                "username": username,
                "status": "active",
                "joined_at": utc_now_iso(),
            },
        )
        logger.info(f"Room {room.id} ({name!r}) created by {identity.user_id}")

        sent = []
        for email in emails:
            try:
                sent.append(await self.invitations.invite(room, identity, email))
            except ValidationError as e:
                # The room exists already; one unusable address should not undo it
                logger.warning(f"Skipping invite of {email} to room {room.id}: {e}")
        return room, sent

    async def list_rooms(self, identity: Identity) -> List[RoomSummary]:
        memberships = await self.store.query_rows(TABLE_MEMBERS, Member, eq={"user_id": identity.user_id})
        summaries = []
        for membership in memberships:
            room = await self.store.get_row(TABLE_ROOMS, Room, membership.room_id)
            if room is None:
                logger.debug(f"Membership {membership.id} points at missing room {membership.room_id}")
                continue
            members = await self.store.query_rows(TABLE_MEMBERS, Member, eq={"room_id": room.id})
            summaries.append(
                RoomSummary(
                    id=room.id,
                    name=room.name,
                    owner_id=room.owner_id,
                    member_count=len(members) or 1,
                    username=membership.username,
                )
            )
        return summaries
