"""Room session controller.

One ``RoomSession`` belongs to one connected client. While a room is active
it owns every live feed for that room (membership, invitations, presence,
chat and shared outputs) and fans updates out to registered listeners.

State machine::

    NO_ROOM -> ROOM_LOADING -> ROOM_ACTIVE -> NO_ROOM

Every transition back to ``NO_ROOM`` bumps ``generation``. Handlers capture
the generation they were created under and drop anything that arrives for an
older one, which also covers lookups that were still in flight at teardown.
"""

import asyncio
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from chat import OutputLog, RoomChat
from constants import TABLE_INVITATIONS, TABLE_MEMBERS, TABLE_ROOMS
from errors import CollabError, NotAMember, NotFoundError, RoomNotFound, TransportError
from events import EventBus, ROOM_LEFT, event_bus
from invitations import InvitationManager
from logging_config import get_logger
from roster import MembershipReconciler, Roster
from schemas.invitations import Invitation, ResolvedInvitation
from schemas.rooms import Identity, Member, Message, Output, Room, RosterEntry
from store import PresenceSubscription, SessionStore, Subscription

logger = get_logger(__name__)


class SessionState(str, Enum):
    NO_ROOM = "no_room"
    ROOM_LOADING = "room_loading"
    ROOM_ACTIVE = "room_active"


class RoomSession:
    def __init__(
        self,
        store: SessionStore,
        invitations: Optional[InvitationManager] = None,
        reconciler: Optional[MembershipReconciler] = None,
        bus: EventBus = event_bus,
    ):
        self.store = store
        self.bus = bus
        self.invitations = invitations or InvitationManager(store, bus)
        self.reconciler = reconciler or MembershipReconciler(store)

        self.state = SessionState.NO_ROOM
        self.generation = 0
        self.identity: Optional[Identity] = None
        self.room: Optional[Room] = None
        self.roster: Optional[Roster] = None
        self.chat: Optional[RoomChat] = None
        self.outputs: Optional[OutputLog] = None

        self._subscriptions: List[Subscription] = []
        self._presence: Optional[PresenceSubscription] = None
        self._listeners: Dict[str, List[Callable]] = {
            "roster": [],
            "invitations": [],
            "message": [],
            "output": [],
            "error": [],
        }

    # Listeners ------------------------------------------------------------
    def on_roster(self, cb: Callable[[List[RosterEntry]], object]):
        self._listeners["roster"].append(cb)

    def on_invites(self, cb: Callable[[List[ResolvedInvitation]], object]):
        self._listeners["invitations"].append(cb)

    def on_message(self, cb: Callable[[Message], object]):
        self._listeners["message"].append(cb)

    def on_output(self, cb: Callable[[Output], object]):
        self._listeners["output"].append(cb)

    def on_error(self, cb: Callable[[CollabError], object]):
        """Live feeds that die after ``enter`` are reported here; the room stays active."""
        self._listeners["error"].append(cb)

    async def _emit(self, kind: str, payload):
        for cb in list(self._listeners[kind]):
            result = cb(payload)
            if asyncio.iscoroutine(result):
                await result

    def _gated(self, generation: int, handler: Callable) -> Callable:
        async def wrapper(*args):
            if generation != self.generation or self.state == SessionState.NO_ROOM:
                logger.debug(f"Dropping late event for generation {generation} (current {self.generation})")
                return
            result = handler(*args)
            if asyncio.iscoroutine(result):
                await result

        return wrapper

    @property
    def active_room_id(self) -> Optional[str]:
        return self.room.id if self.room else None

    def roster_entries(self) -> List[RosterEntry]:
        return self.roster.entries() if self.roster else []

    def pending_invitations(self) -> List[ResolvedInvitation]:
        if self.identity is None:
            return []
        return self.invitations.pending_for(self.identity).items()

    # Feed handlers --------------------------------------------------------
    async def _on_members(self, members: List[Member]):
        self.roster.set_members(members)
        await self._emit("roster", self.roster.entries())

    async def _on_presence(self, keys: Set[str]):
        self.roster.set_online(keys)
        await self._emit("roster", self.roster.entries())

    async def _on_new_invite(self, invitation: ResolvedInvitation):
        await self._emit("invitations", self.pending_invitations())

    async def _on_message(self, message: Message):
        await self._emit("message", message)

    async def _on_output(self, output: Output):
        await self._emit("output", output)

    async def _on_feed_lost(self, error: CollabError):
        await self._emit("error", error)

    async def _on_presence_lost(self, error: CollabError):
        self.roster.mark_presence_unavailable()
        await self._emit("roster", self.roster.entries())
        await self._emit("error", error)

    # Lifecycle ------------------------------------------------------------
    async def enter(self, room_id: str, identity: Identity) -> List[RosterEntry]:
        if self.state != SessionState.NO_ROOM:
            if self.active_room_id == room_id and self.identity == identity:
                return self.roster_entries()
            await self._teardown()

        self.generation += 1
        generation = self.generation
        self.state = SessionState.ROOM_LOADING
        self.identity = identity
        logger.info(f"User {identity.user_id} entering room {room_id}")

        started: List[Subscription] = []
        presence: Optional[PresenceSubscription] = None
        try:
            room = await self.store.get_row(TABLE_ROOMS, Room, room_id)
            if room is None:
                raise RoomNotFound(room_id)
            members = await self.reconciler.load_members(room_id)
            if not any(m.user_id == identity.user_id for m in members):
                raise NotAMember(room_id, identity.user_id)

            roster = Roster(room.id, room.owner_id)
            roster.set_members(members)
            chat = RoomChat(self.store, room.id)
            outputs = OutputLog(self.store, room.id)
            await chat.load()
            await outputs.load()

            if generation != self.generation:
                return []
            self.room, self.roster, self.chat, self.outputs = room, roster, chat, outputs

            feeds = [
                self.reconciler.subscribe_membership(room.id, self._gated(generation, self._on_members)),
                self.invitations.subscribe_realtime(identity, self._gated(generation, self._on_new_invite)),
                chat.subscribe(self._gated(generation, self._on_message)),
                outputs.subscribe(self._gated(generation, self._on_output)),
            ]
            for feed in feeds:
                feed.on_error = self._gated(generation, self._on_feed_lost)
                await feed.start()
                started.append(feed)

            presence = await self.reconciler.join_presence_channel(
                room.id, identity.user_id, self._gated(generation, self._on_presence)
            )
            if presence is None:
                roster.mark_presence_unavailable()
            else:
                presence.on_error = self._gated(generation, self._on_presence_lost)

            try:
                await self.invitations.load_pending(identity)
            except TransportError as e:
                logger.warning(f"Could not load pending invitations for {identity.user_id}: {e}")
        except BaseException:
            await self._stop_all(started, presence)
            if generation == self.generation:
                self._reset()
            raise

        if generation != self.generation:
            # left (or re-entered) while loading; these feeds belong to nobody
            await self._stop_all(started, presence)
            return []

        self._subscriptions = started
        self._presence = presence
        self.state = SessionState.ROOM_ACTIVE
        logger.info(f"User {identity.user_id} active in room {room_id} ({len(members)} members)")
        await self._emit("roster", self.roster.entries())
        await self._emit("invitations", self.pending_invitations())
        return self.roster.entries()

    async def _stop_all(self, subscriptions: List[Subscription], presence: Optional[PresenceSubscription]):
        for subscription in list(subscriptions) + ([presence] if presence else []):
            try:
                await subscription.stop()
            except Exception as e:
                logger.error(f"Error stopping {subscription.name}: {e}", exc_info=True)

    def _reset(self):
        self.state = SessionState.NO_ROOM
        self.room = None
        self.roster = None
        self.chat = None
        self.outputs = None

    async def _teardown(self):
        self.generation += 1
        subscriptions, self._subscriptions = self._subscriptions, []
        presence, self._presence = self._presence, None
        self._reset()
        await self._stop_all(subscriptions, presence)

    async def close(self):
        """Drop the active room without touching membership (connection went away)."""
        if self.room is not None:
            logger.info(f"Closing session for room {self.room.id}")
        await self._teardown()

    async def leave(self, room_id: str, identity: Identity) -> bool:
        """Tear down the session and delete the caller's membership of ``room_id``."""
        if self.active_room_id == room_id or self.state == SessionState.ROOM_LOADING:
            await self._teardown()
        deleted = await self.store.delete_rows(
            TABLE_MEMBERS, Member, {"room_id": room_id, "user_id": identity.user_id}
        )
        logger.info(f"User {identity.user_id} left room {room_id} (membership rows removed: {len(deleted)})")
        await self.bus.publish(ROOM_LEFT, {"room_id": room_id, "user_id": identity.user_id})
        return bool(deleted)

    # Actions --------------------------------------------------------------
    async def _member_room(self, room_id: str, identity: Identity) -> Room:
        room = await self.store.get_row(TABLE_ROOMS, Room, room_id)
        if room is None:
            raise RoomNotFound(room_id)
        members = await self.reconciler.load_members(room_id)
        if not any(m.user_id == identity.user_id for m in members):
            raise NotAMember(room_id, identity.user_id)
        return room

    async def invite(self, room_id: str, inviter: Identity, email: str) -> Invitation:
        room = await self._member_room(room_id, inviter)
        return await self.invitations.invite(room, inviter, email)

    async def respond(self, invitation_id: str, accept: bool, identity: Identity) -> Invitation:
        invitation = await self.store.get_row(TABLE_INVITATIONS, Invitation, invitation_id)
        if invitation is None:
            raise NotFoundError(f"Invitation {invitation_id} not found")
        updated = await self.invitations.respond(invitation, accept, identity)
        if self.identity is not None and self.identity.user_id == identity.user_id:
            await self._emit("invitations", self.pending_invitations())
        return updated

    async def send_message(self, content: str) -> Message:
        self._require_active()
        return await self.chat.send(self.identity, self._username(), content)

    async def share_output(self, code: str, output: str, language: str) -> Output:
        self._require_active()
        return await self.outputs.share(self.identity, self._username(), code, output, language)

    def _require_active(self):
        if self.state != SessionState.ROOM_ACTIVE:
            raise CollabError("No active room")

    def _username(self) -> str:
        for member in self.roster.members:
            if member.user_id == self.identity.user_id:
                return member.username
        return self.identity.email.split("@")[0] if self.identity.email else self.identity.user_id
