import asyncio
import re
from typing import Callable, Dict, Iterable, List, Optional

from backend import utc_now_iso
from constants import (
    TABLE_INVITATIONS,
    TABLE_MEMBERS,
    TABLE_PROFILES,
    TABLE_ROOMS,
    FALLBACK_INVITER_NAME,
    FALLBACK_ROOM_NAME,
    FALLBACK_USERNAME,
)
from errors import CollabError, DuplicateRow, NotFoundError, RoomNotFound, TransportError, ValidationError
from events import EventBus, ROOM_JOINED, event_bus
from logging_config import get_logger
from schemas.invitations import ACCEPTED, DECLINED, PENDING, Invitation, ResolvedInvitation
from schemas.rooms import Identity, Member, Profile, Room, TableEvent
from store import SessionStore, Subscription, narrow

logger = get_logger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email(email: str) -> str:
    email = (email or "").strip().lower()
    if not EMAIL_RE.match(email):
        raise ValidationError(f"Invalid email address: {email!r}")
    return email


class PendingInvitations:
    """Pending list for one person, unique by invitation id.

    The initial load and the realtime feed can both deliver the same row, so
    every way in goes through ``merge``.
    """

    def __init__(self):
        self._items: List[ResolvedInvitation] = []
        self._pushed: List[ResolvedInvitation] = []

    def __contains__(self, invitation_id: str) -> bool:
        return any(inv.id == invitation_id for inv in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def items(self) -> List[ResolvedInvitation]:
        return list(self._items)

    def merge(self, invites: Iterable[ResolvedInvitation], prepend: bool = False) -> List[ResolvedInvitation]:
        added = []
        for inv in invites:
            if inv.id in self or any(a.id == inv.id for a in added):
                continue
            added.append(inv)
        if prepend:
            self._items = list(reversed(added)) + self._items
            self._pushed.extend(added)
        else:
            self._items.extend(added)
        return added

    def begin_reload(self):
        self._pushed = []

    def replace(self, invites: Iterable[ResolvedInvitation]):
        """Swap in a fresh load, keeping rows pushed while that load was running."""
        pushed = self._pushed
        self._items = []
        self._pushed = []
        self.merge(invites)
        self.merge(pushed, prepend=True)

    def remove(self, invitation_id: str) -> Optional[ResolvedInvitation]:
        for i, inv in enumerate(self._items):
            if inv.id == invitation_id:
                return self._items.pop(i)
        return None


class InvitationManager:
    def __init__(self, store: SessionStore, bus: EventBus = event_bus):
        self.store = store
        self.bus = bus
        self._pending: Dict[str, PendingInvitations] = {}

    def pending_for(self, identity: Identity) -> PendingInvitations:
        return self._pending.setdefault(identity.user_id, PendingInvitations())

    # Resolution -----------------------------------------------------------
    async def _room_name(self, room_id: str) -> str:
        try:
            room = await self.store.get_row(TABLE_ROOMS, Room, room_id)
        except (TransportError, NotFoundError, ValidationError) as e:
            logger.warning(f"Could not resolve room {room_id}: {e}")
            return FALLBACK_ROOM_NAME
        if room is None:
            logger.debug(f"Invitation references missing room {room_id}")
            return FALLBACK_ROOM_NAME
        return room.name or FALLBACK_ROOM_NAME

    async def _inviter_name(self, inviter_id: str) -> str:
        try:
            profile = await self.store.get_row(TABLE_PROFILES, Profile, inviter_id)
        except (TransportError, NotFoundError, ValidationError) as e:
            logger.warning(f"Could not resolve inviter {inviter_id}: {e}")
            return FALLBACK_INVITER_NAME
        if profile is None:
            return FALLBACK_INVITER_NAME
        return profile.display_name() or FALLBACK_INVITER_NAME

    async def resolve(self, invitation: Invitation) -> ResolvedInvitation:
        room_name, inviter_name = await asyncio.gather(
            self._room_name(invitation.room_id),
            self._inviter_name(invitation.inviter_id),
        )
        return ResolvedInvitation(**invitation.model_dump(), room_name=room_name, inviter_name=inviter_name)

    # Loading --------------------------------------------------------------
    def _identity_filter(self, identity: Identity) -> List[dict]:
        groups = [{"invitee_id": identity.user_id}]
        if identity.email:
            groups.append({"invitee_email__ieq": identity.email})
        return groups

    async def load_pending(self, identity: Identity) -> List[ResolvedInvitation]:
        pending = self.pending_for(identity)
        pending.begin_reload()
        rows = await self.store.query_rows(
            TABLE_INVITATIONS,
            Invitation,
            eq={"status": PENDING},
            any_of=self._identity_filter(identity),
        )
        seen = set()
        unique = []
        for row in rows:
            if row.id in seen:
                continue
            seen.add(row.id)
            unique.append(row)
        resolved = await asyncio.gather(*(self.resolve(row) for row in unique))
        pending.replace(resolved)
        logger.info(f"Loaded {len(pending)} pending invitations for user {identity.user_id}")
        return pending.items()

    def subscribe_realtime(self, identity: Identity, on_new_invite: Callable[[ResolvedInvitation], object]) -> Subscription:
        """Feed of invitations newly addressed to ``identity``.

        The upstream feed carries every insert, so rows are matched against the
        identity here. ``on_new_invite`` only sees ids not already pending. The
        returned subscription is not started.
        """
        pending = self.pending_for(identity)
        holder = {}

        async def handle(event: TableEvent):
            try:
                invitation = narrow(Invitation, event.new or {})
            except ValidationError as e:
                logger.error(f"Ignoring malformed invitation row: {e}")
                return
            if invitation.status != PENDING or not invitation.is_for(identity.user_id, identity.email):
                return
            if invitation.id in pending:
                logger.debug(f"Invitation {invitation.id} already pending, skipping")
                return
            resolved = await self.resolve(invitation)
            # Resolution awaits the store; the feed may have been stopped meanwhile
            if not holder["subscription"].active:
                logger.debug(f"Discarding invitation {invitation.id} resolved after teardown")
                return
            if pending.merge([resolved], prepend=True):
                logger.info(f"New invitation {invitation.id} for user {identity.user_id}")
                result = on_new_invite(resolved)
                if asyncio.iscoroutine(result):
                    await result

        subscription = self.store.subscribe_to_table_events(TABLE_INVITATIONS, None, handle, events=("INSERT",))
        holder["subscription"] = subscription
        return subscription

    # Mutations ------------------------------------------------------------
    async def invite(self, room: Room, inviter: Identity, email: str) -> Invitation:
        email = normalize_email(email)
        existing = await self.store.query_rows(
            TABLE_INVITATIONS,
            Invitation,
            eq={"room_id": room.id, "status": PENDING, "invitee_email__ieq": email},
        )
        if existing:
            logger.info(f"Pending invitation for {email} to room {room.id} already exists")
            return existing[0]

        profiles = await self.store.query_rows(TABLE_PROFILES, Profile, eq={"email__ieq": email})
        invitee_id = profiles[0].id if profiles else None

        members = await self.store.query_rows(TABLE_MEMBERS, Member, eq={"room_id": room.id})
        if invitee_id and any(m.user_id == invitee_id for m in members):
            raise ValidationError(f"{email} is already a member of this room")
        pending = await self.store.query_rows(
            TABLE_INVITATIONS, Invitation, eq={"room_id": room.id, "status": PENDING}
        )
        if len(members) + len(pending) >= room.max_users:
            logger.warning(f"Invite to {email} rejected: room {room.id} is full ({len(members)} members, {len(pending)} pending)")
            raise ValidationError("Room is full")

        try:
            invitation = await self.store.insert_row(
                TABLE_INVITATIONS,
                Invitation,
                {
                    "room_id": room.id,
                    "inviter_id": inviter.user_id,
                    "invitee_email": email,
                    "invitee_id": invitee_id,
                    "status": PENDING,
                },
            )
        except DuplicateRow as e:
            # another invite for the same (room, email) claimed the pending slot first
            existing = await self.store.get_row(TABLE_INVITATIONS, Invitation, e.existing_id) if e.existing_id else None
            if existing is None:
                raise
            logger.info(f"Pending invitation for {email} to room {room.id} was created concurrently")
            return existing
        logger.info(f"User {inviter.user_id} invited {email} to room {room.id}")
        return invitation

    async def _username_for(self, identity: Identity) -> str:
        try:
            profile = await self.store.get_row(TABLE_PROFILES, Profile, identity.user_id)
        except (TransportError, ValidationError) as e:
            logger.warning(f"Could not load profile for {identity.user_id}: {e}")
            profile = None
        if profile is not None and profile.display_name():
            return profile.display_name()
        if identity.email:
            return identity.email.split("@")[0]
        return FALLBACK_USERNAME

    async def respond(self, invitation: Invitation, accept: bool, identity: Identity, username: Optional[str] = None) -> Invitation:
        """Accept or decline. Either the whole transition happens or none of it does."""
        target = ACCEPTED if accept else DECLINED
        current = await self.store.get_row(TABLE_INVITATIONS, Invitation, invitation.id)
        if current is None:
            raise NotFoundError(f"Invitation {invitation.id} not found")
        if not current.is_for(identity.user_id, identity.email):
            raise ValidationError("This invitation is addressed to someone else")
        pending = self.pending_for(identity)
        if current.status == target:
            logger.info(f"Invitation {current.id} already {target}")
            pending.remove(current.id)
            return current
        if current.status != PENDING:
            raise ValidationError(f"Invitation was already {current.status}")

        created_member = False
        if accept:
            room = await self.store.get_row(TABLE_ROOMS, Room, current.room_id)
            if room is None:
                raise RoomNotFound(current.room_id)
            members = await self.store.query_rows(TABLE_MEMBERS, Member, eq={"room_id": room.id})
            if not any(m.user_id == identity.user_id for m in members):
                if len(members) >= room.max_users:
                    raise ValidationError("Room is full")
                created_member = True
            await self.store.upsert_row(
                TABLE_MEMBERS,
                Member,
                {
                    "room_id": room.id,
                    "user_id": identity.user_id,
                    "username": username or await self._username_for(identity),
                    "status": "active",
                    "joined_at": utc_now_iso(),
                },
            )

        changes = {"status": target}
        if accept and not current.invitee_id:
            changes["invitee_id"] = identity.user_id
        try:
            # only a still-pending row may transition; a concurrent answer makes this fail
            updated = await self.store.update_row(
                TABLE_INVITATIONS, Invitation, current.id, changes, expected={"status": PENDING}
            )
        except CollabError:
            if created_member:
                logger.warning(f"Rolling back membership of {identity.user_id} in room {current.room_id}")
                await self.store.delete_rows(
                    TABLE_MEMBERS, Member, {"room_id": current.room_id, "user_id": identity.user_id}
                )
            raise

        pending.remove(current.id)
        logger.info(f"User {identity.user_id} {target} invitation {current.id} to room {current.room_id}")
        if accept:
            await self.bus.publish(ROOM_JOINED, {"room_id": current.room_id, "user_id": identity.user_id})
        return updated
