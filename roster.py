import asyncio
from typing import Callable, Iterable, List, Optional, Set

from constants import TABLE_MEMBERS
from errors import CollabError
from logging_config import get_logger
from schemas.rooms import Member, RosterEntry, TableEvent
from store import PresenceSubscription, SessionStore, Subscription

logger = get_logger(__name__)


def presence_channel(room_id: str) -> str:
    return f"room:{room_id}"


def merge_roster(members: Iterable[Member], online_keys: Set[str], owner_id: Optional[str] = None) -> List[RosterEntry]:
    """Annotate members with presence.

    Online members first; among offline members the owner leads; otherwise
    input order is kept. Pure: equal inputs give equal outputs.
    """
    entries = [
        RosterEntry(
            user_id=m.user_id,
            username=m.username,
            is_owner=owner_id is not None and m.user_id == owner_id,
            is_online=str(m.user_id) in online_keys,
            joined_at=m.joined_at,
        )
        for m in members
    ]
    # sorted() is stable, so ties keep insertion order
    return sorted(entries, key=lambda e: (not e.is_online, e.is_online or not e.is_owner))


class Roster:
    """Last-known-good members plus the current online set for one room."""

    def __init__(self, room_id: str, owner_id: Optional[str] = None):
        self.room_id = room_id
        self.owner_id = owner_id
        self.members: List[Member] = []
        self.online_keys: Set[str] = set()
        self.presence_available = False

    def set_members(self, members: List[Member]):
        self.members = list(members)

    def set_online(self, keys: Set[str]):
        self.online_keys = set(keys)
        self.presence_available = True

    def mark_presence_unavailable(self):
        self.online_keys = set()
        self.presence_available = False

    def entries(self) -> List[RosterEntry]:
        return merge_roster(self.members, self.online_keys, self.owner_id)

    def has_member(self, user_id: str) -> bool:
        return any(m.user_id == user_id for m in self.members)


class MembershipReconciler:
    def __init__(self, store: SessionStore):
        self.store = store

    async def load_members(self, room_id: str) -> List[Member]:
        members = await self.store.query_rows(TABLE_MEMBERS, Member, eq={"room_id": room_id})
        logger.debug(f"Room {room_id} has {len(members)} members")
        return members

    def subscribe_membership(self, room_id: str, on_change: Callable[[List[Member]], object]) -> Subscription:
        """Any member change in the room triggers a full reload handed to ``on_change``.

        A reload that fails keeps the last-known-good list (``on_change`` is
        not called). The returned subscription is not started.
        """
        holder = {}

        async def handle(event: TableEvent):
            logger.debug(f"Member {event.type} in room {room_id}, reloading")
            try:
                members = await self.load_members(room_id)
            except CollabError as e:
                logger.warning(f"Reloading members of room {room_id} failed: {e}")
                return
            if not holder["subscription"].active:
                return
            result = on_change(members)
            if asyncio.iscoroutine(result):
                await result

        subscription = self.store.subscribe_to_table_events(TABLE_MEMBERS, {"room_id": room_id}, handle)
        holder["subscription"] = subscription
        return subscription

    async def join_presence_channel(
        self,
        room_id: str,
        self_key: str,
        on_sync: Callable[[Set[str]], object],
    ) -> Optional[PresenceSubscription]:
        """Start a presence subscription tracking ``self_key``.

        Presence is best effort: when the channel cannot be joined this returns
        None and the caller keeps everyone offline.
        """
        subscription = self.store.subscribe_to_presence(
            presence_channel(room_id), on_sync, key=self_key, payload={"user_id": self_key}
        )
        try:
            await subscription.start()
        except CollabError as e:
            logger.warning(f"Presence unavailable for room {room_id}: {e}")
            return None
        return subscription
