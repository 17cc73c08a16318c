"""Typed boundary over the Realtime Data Service.

Every row crossing this module is narrowed into a pydantic model, and every
live feed is handed out as a :class:`Subscription` with an explicit
``start()`` / ``stop()`` lifecycle. Nothing here retries; callers decide.
"""

import inspect
from typing import Any, Callable, Iterable, List, Optional, Set, Type, TypeVar

from pydantic import BaseModel, ValidationError as SchemaError

from backend import matches
from errors import ValidationError
from logging_config import get_logger
from schemas.rooms import Identity, TableEvent

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def narrow(model: Type[ModelT], row: Any) -> ModelT:
    try:
        return model.model_validate(row)
    except SchemaError as e:
        raise ValidationError(f"Malformed {model.__name__} row: {e.error_count()} error(s)") from e


async def _call(handler: Callable, *args):
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class Subscription:
    """A live feed that delivers nothing before ``start()`` or after ``stop()``.

    The ``active`` check in ``_deliver`` also covers messages that were
    already in flight when ``stop()`` was called. If the feed dies underneath
    it the subscription goes inactive and ``on_error`` is told once.
    """

    def __init__(self, name: str, feed_factory: Callable, handler: Callable, on_error: Optional[Callable] = None):
        self.name = name
        self.handler = handler
        self.on_error = on_error
        self.feed = feed_factory(self._deliver, self._fail)
        self.active = False

    async def start(self):
        if self.active:
            return
        self.active = True
        try:
            await self.feed.start()
        except Exception:
            self.active = False
            raise
        logger.debug(f"Subscription {self.name} started")

    async def stop(self):
        was_active, self.active = self.active, False
        await self.feed.stop()
        if was_active:
            logger.debug(f"Subscription {self.name} stopped")

    async def _deliver(self, message: dict):
        if not self.active:
            logger.debug(f"Dropping message for stopped subscription {self.name}")
            return
        await _call(self.handler, message)

    async def _fail(self, error: Exception):
        if not self.active:
            return
        self.active = False
        logger.error(f"Subscription {self.name} lost its feed: {error}")
        if self.on_error is not None:
            await _call(self.on_error, error)


class PresenceSubscription(Subscription):
    """Presence channel membership for one key.

    On start the key is tracked; on every sync the handler receives the set of
    currently tracked keys. On stop the key is untracked so the others see it
    go offline.
    """

    def __init__(self, service, channel_key: str, on_sync: Callable, key: Optional[str] = None, payload: Optional[dict] = None):
        self.service = service
        self.channel_key = channel_key
        self.key = key
        self.payload = payload or {}
        self.online_keys: Set[str] = set()
        self.on_sync = on_sync
        self.tracked = False
        super().__init__(
            f"presence:{channel_key}",
            lambda deliver, fail: service.presence_feed(channel_key, deliver, fail),
            self._handle_sync,
        )

    async def start(self):
        await super().start()
        if self.key is not None:
            try:
                await self.service.track_presence(self.channel_key, self.key, self.payload)
            except Exception:
                await super().stop()
                raise
            self.tracked = True

    async def stop(self):
        # a lost feed leaves the key tracked, so untrack on tracked rather than active
        was_tracked, self.tracked = self.tracked, False
        self.active = False
        if was_tracked:
            try:
                await self.service.untrack_presence(self.channel_key, self.key)
            except Exception as e:
                # The connection is going away regardless; other clients resync on their next event
                logger.warning(f"Could not untrack {self.key} from {self.channel_key}: {e}")
        await self.feed.stop()

    async def _handle_sync(self, message: dict):
        if message.get("type") != "sync":
            return
        self.online_keys = set((message.get("state") or {}).keys())
        await _call(self.on_sync, set(self.online_keys))


class SessionStore:
    def __init__(self, service):
        self.service = service

    async def resolve_identity(self, token: str) -> Identity:
        return narrow(Identity, await self.service.resolve_identity(token))

    async def get_row(self, table: str, model: Type[ModelT], row_id: str) -> Optional[ModelT]:
        row = await self.service.get(table, row_id)
        if row is None:
            return None
        return narrow(model, row)

    async def query_rows(
        self,
        table: str,
        model: Type[ModelT],
        eq: Optional[dict] = None,
        any_of: Optional[Iterable[dict]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[ModelT]:
        rows = await self.service.select(
            table, eq=eq, any_of=any_of, order_by=order_by, descending=descending, limit=limit
        )
        return [narrow(model, row) for row in rows]

    async def insert_row(self, table: str, model: Type[ModelT], row: dict) -> ModelT:
        return narrow(model, await self.service.insert(table, row))

    async def upsert_row(self, table: str, model: Type[ModelT], row: dict) -> ModelT:
        return narrow(model, await self.service.upsert(table, row))

    async def update_row(
        self, table: str, model: Type[ModelT], row_id: str, changes: dict, expected: Optional[dict] = None
    ) -> ModelT:
        """Apply ``changes``; with ``expected``, only while the stored row still matches it."""
        return narrow(model, await self.service.update(table, row_id, changes, expected=expected))

    async def delete_rows(self, table: str, model: Type[ModelT], eq: dict) -> List[ModelT]:
        return [narrow(model, row) for row in await self.service.delete(table, eq)]

    def subscribe_to_table_events(
        self,
        table: str,
        filter: Optional[dict],
        on_event: Callable[[TableEvent], Any],
        events: Optional[Iterable[str]] = None,
    ) -> Subscription:
        """Change feed on ``table``, narrowed to ``events`` and to rows matching ``filter``.

        The returned subscription is not started.
        """
        wanted = set(events) if events else None

        async def handle(message: dict):
            try:
                event = narrow(TableEvent, message)
            except ValidationError as e:
                logger.error(f"Ignoring malformed change event on {table}: {e}")
                return
            if event.table != table:
                return
            if wanted is not None and event.type not in wanted:
                return
            if filter and not matches(event.row() or {}, filter):
                return
            await _call(on_event, event)

        return Subscription(f"table:{table}:{filter}", lambda deliver, fail: self.service.table_feed(table, deliver, fail), handle)

    def subscribe_to_presence(
        self,
        channel_key: str,
        on_sync: Callable[[Set[str]], Any],
        key: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> PresenceSubscription:
        return PresenceSubscription(self.service, channel_key, on_sync, key=key, payload=payload)

    async def track_presence(self, channel_key: str, key: str, payload: Optional[dict] = None):
        await self.service.track_presence(channel_key, key, payload or {})

    async def presence_keys(self, channel_key: str) -> Set[str]:
        """Snapshot of the keys currently tracked on ``channel_key``."""
        return set((await self.service.presence_state(channel_key)).keys())
