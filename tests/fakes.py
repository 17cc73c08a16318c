"""In-process Realtime Data Service for exercising the room logic.

Same method surface as ``backend.RedisBackend``. Change events and presence
syncs are delivered inline, so once a mutation has been awaited every
started feed has already seen it. Failures and hooks can be injected per
``(operation, table)``.
"""

import copy
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from backend import matches
from constants import CONDITIONAL_UNIQUE_KEYS, TABLE_PROFILES, UNIQUE_KEYS
from errors import AuthError, DuplicateRow, NotFoundError, TransportError, ValidationError

EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


class InMemoryFeed:
    def __init__(self, service: "InMemoryDataService", channel: str, on_message: Callable[[dict], Awaitable[None]], on_error=None):
        self.service = service
        self.channel = channel
        self.on_message = on_message
        self.on_error = on_error

    async def start(self) -> None:
        if self.channel in self.service.unavailable_channels:
            raise TransportError(f"channel {self.channel} unavailable")
        feeds = self.service.feeds.setdefault(self.channel, [])
        if self not in feeds:
            feeds.append(self)

    async def stop(self) -> None:
        feeds = self.service.feeds.get(self.channel, [])
        if self in feeds:
            feeds.remove(self)


class InMemoryDataService:
    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, dict]] = {}
        self.unique: Dict[Tuple, str] = {}
        self.presence: Dict[str, Dict[str, dict]] = {}
        self.tokens: Dict[str, dict] = {}
        self.feeds: Dict[str, List[InMemoryFeed]] = {}
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self.hooks: Dict[Tuple[str, str], Callable[[], Awaitable[None]]] = {}
        self.unavailable_channels = set()
        self.deliver_twice = False
        self.published: List[dict] = []
        self._tick = 0

    # helpers --------------------------------------------------------------
    def _now(self) -> str:
        self._tick += 1
        return (EPOCH + timedelta(seconds=self._tick)).isoformat()

    async def _check(self, op: str, table: str) -> None:
        hook = self.hooks.pop((op, table), None)
        if hook is not None:
            await hook()
        failure = self.failures.get((op, table))
        if failure is not None:
            raise failure

    async def _deliver(self, channel: str, message: dict) -> None:
        self.published.append(message)
        times = 2 if self.deliver_twice else 1
        for _ in range(times):
            for feed in list(self.feeds.get(channel, [])):
                await feed.on_message(copy.deepcopy(message))

    async def fail_channel(self, channel: str, error: Optional[Exception] = None) -> None:
        """Drop every feed on ``channel`` the way a lost pub/sub connection does."""
        for feed in self.feeds.pop(channel, []):
            if feed.on_error is not None:
                await feed.on_error(error or TransportError(f"Lost feed {channel}"))

    async def emit(self, table: str, event_type: str, new: Optional[dict] = None, old: Optional[dict] = None) -> None:
        """Push a change event without touching the rows (late or duplicate delivery)."""
        await self._deliver(
            f"feed:{table}", {"type": event_type, "table": table, "new": new, "old": old, "commit_ts": self._now()}
        )

    def _unique_key(self, table: str, row: dict) -> Optional[Tuple]:
        columns = UNIQUE_KEYS.get(table)
        if not columns or any(row.get(c) is None for c in columns):
            return None
        return (table,) + tuple(row[c] for c in columns)

    def _conditional_key(self, table: str, row: dict) -> Optional[Tuple]:
        if table not in CONDITIONAL_UNIQUE_KEYS:
            return None
        columns, condition = CONDITIONAL_UNIQUE_KEYS[table]
        if not matches(row, condition) or any(row.get(c) is None for c in columns):
            return None
        return (table, "when") + tuple(row[c] for c in columns)

    def _keys(self, table: str, row: dict) -> List[Tuple]:
        return [k for k in (self._unique_key(table, row), self._conditional_key(table, row)) if k]

    def rows(self, table: str) -> List[dict]:
        return [copy.deepcopy(r) for r in self.tables.get(table, {}).values()]

    def put(self, table: str, row: dict) -> dict:
        """Seed a row directly, bypassing feeds."""
        row = dict(row)
        row.setdefault("id", uuid.uuid4().hex)
        row.setdefault("created_at", self._now())
        self.tables.setdefault(table, {})[row["id"]] = row
        for key in self._keys(table, row):
            self.unique[key] = row["id"]
        return copy.deepcopy(row)

    def register(self, user_id: str, email: str, full_name: Optional[str] = None) -> str:
        self.put(TABLE_PROFILES, {"id": user_id, "email": email.lower(), "full_name": full_name})
        token = f"token-{user_id}"
        self.tokens[token] = {"user_id": user_id, "email": email.lower()}
        return token

    async def ping(self) -> bool:
        return True

    # rows -----------------------------------------------------------------
    async def get(self, table: str, row_id: str) -> Optional[dict]:
        await self._check("get", table)
        row = self.tables.get(table, {}).get(row_id)
        return copy.deepcopy(row) if row else None

    async def select(self, table, eq=None, any_of=None, order_by=None, descending=False, limit=None) -> List[dict]:
        await self._check("select", table)
        any_of = list(any_of or [])
        rows = [
            r for r in self.rows(table)
            if matches(r, eq) and (not any_of or any(matches(r, g) for g in any_of))
        ]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by) or ""), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def insert(self, table: str, row: dict) -> dict:
        await self._check("insert", table)
        new = dict(row)
        new.setdefault("id", uuid.uuid4().hex)
        new.setdefault("created_at", self._now())
        for key in self._keys(table, new):
            if key in self.unique:
                raise DuplicateRow(table, self.unique[key])
        stored = self.put(table, new)
        await self._deliver(f"feed:{table}", {"type": "INSERT", "table": table, "new": stored, "old": None})
        return stored

    async def upsert(self, table: str, row: dict) -> dict:
        await self._check("upsert", table)
        key = self._unique_key(table, row)
        if key is None:
            raise ValidationError(f"upsert into {table} needs its unique key")
        existing_id = self.unique.get(key)
        if existing_id is None:
            stored = self.put(table, row)
            await self._deliver(f"feed:{table}", {"type": "INSERT", "table": table, "new": stored, "old": None})
            return stored
        old = copy.deepcopy(self.tables[table][existing_id])
        self.tables[table][existing_id].update({k: v for k, v in row.items() if k not in ("id", "created_at")})
        stored = copy.deepcopy(self.tables[table][existing_id])
        await self._deliver(f"feed:{table}", {"type": "UPDATE", "table": table, "new": stored, "old": old})
        return stored

    async def update(self, table: str, row_id: str, changes: dict, expected: Optional[dict] = None) -> dict:
        await self._check("update", table)
        current = self.tables.get(table, {}).get(row_id)
        if current is None:
            raise NotFoundError(f"{row_id} not in {table}")
        if expected and not matches(current, expected):
            raise ValidationError(f"{row_id} in {table} was changed by someone else")
        old = copy.deepcopy(current)
        new_claim = self._conditional_key(table, dict(old, **changes))
        if new_claim and self.unique.get(new_claim, row_id) != row_id:
            raise DuplicateRow(table, self.unique[new_claim])
        old_claim = self._conditional_key(table, old)
        if old_claim and old_claim != new_claim and self.unique.get(old_claim) == row_id:
            del self.unique[old_claim]
        if new_claim:
            self.unique[new_claim] = row_id
        current.update(changes)
        current["updated_at"] = self._now()
        stored = copy.deepcopy(current)
        await self._deliver(f"feed:{table}", {"type": "UPDATE", "table": table, "new": stored, "old": old})
        return stored

    async def delete(self, table: str, eq: dict) -> List[dict]:
        await self._check("delete", table)
        deleted = []
        for row in await self.select(table, eq=eq):
            del self.tables[table][row["id"]]
            for key in self._keys(table, row):
                if self.unique.get(key) == row["id"]:
                    del self.unique[key]
            deleted.append(row)
            await self._deliver(f"feed:{table}", {"type": "DELETE", "table": table, "new": None, "old": row})
        return deleted

    def table_feed(self, table: str, on_message, on_error=None) -> InMemoryFeed:
        return InMemoryFeed(self, f"feed:{table}", on_message, on_error)

    # presence -------------------------------------------------------------
    async def presence_state(self, channel: str) -> dict:
        return copy.deepcopy(self.presence.get(channel, {}))

    async def _sync(self, channel: str) -> None:
        await self._deliver(
            f"presence:{channel}", {"type": "sync", "channel": channel, "state": await self.presence_state(channel)}
        )

    async def track_presence(self, channel: str, key: str, payload: Optional[dict] = None) -> None:
        if f"presence:{channel}" in self.unavailable_channels:
            raise TransportError(f"presence on {channel} unavailable")
        self.presence.setdefault(channel, {})[key] = payload or {}
        await self._sync(channel)

    async def untrack_presence(self, channel: str, key: str) -> None:
        self.presence.get(channel, {}).pop(key, None)
        await self._sync(channel)

    def presence_feed(self, channel: str, on_message, on_error=None) -> InMemoryFeed:
        return InMemoryFeed(self, f"presence:{channel}", on_message, on_error)

    # identity -------------------------------------------------------------
    async def resolve_identity(self, token: Optional[str]) -> dict:
        if not token or token not in self.tokens:
            raise AuthError("Invalid or expired token")
        return dict(self.tokens[token])
