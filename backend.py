import asyncio
import functools
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import redis.asyncio as redis
from redis.exceptions import (
    AuthenticationError,
    ConnectionError as RedisConnectionError,
    TimeoutError as RedisTimeoutError,
    WatchError,
)

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_DB, PUBSUB_POLL_TIMEOUT, UNIQUE_KEYS, CONDITIONAL_UNIQUE_KEYS
from errors import AuthError, DuplicateRow, NotFoundError, TransportError, ValidationError
from logging_config import get_logger
from redis_keys import (
    REDIS_ROW_KEY,
    REDIS_TABLE_IDS_KEY,
    REDIS_TABLE_SEQ_KEY,
    REDIS_UNIQUE_KEY,
    REDIS_TABLE_CHANNEL,
    REDIS_PRESENCE_KEY,
    REDIS_PRESENCE_CHANNEL,
    REDIS_TOKEN_KEY,
)

logger = get_logger(__name__)

MessageHandler = Callable[[dict], Awaitable[None]]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def matches(row: dict, conditions: Optional[dict]) -> bool:
    """Equality predicate over a row.

    A column suffixed with ``__ieq`` is compared case-insensitively,
    e.g. ``{"invitee_email__ieq": "B@Example.com"}``.
    """
    if not conditions:
        return True
    for column, expected in conditions.items():
        if column.endswith("__ieq"):
            actual = row.get(column[: -len("__ieq")])
            if actual is None or expected is None:
                return False
            if str(actual).lower() != str(expected).lower():
                return False
        elif row.get(column) != expected:
            return False
    return True


def translate_errors(func):
    """Map redis-py failures onto the subsystem's error taxonomy."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        # AuthenticationError subclasses ConnectionError, so it goes first
        except AuthenticationError as e:
            logger.error(f"Redis rejected credentials in {func.__name__}: {e}")
            raise AuthError(str(e)) from e
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning(f"Redis unavailable in {func.__name__}: {e}")
            raise TransportError(str(e)) from e

    return wrapper


def _encode_row(row: dict) -> Dict[str, str]:
    return {k: json.dumps(v) for k, v in row.items()}


def _decode_row(raw: dict) -> dict:
    result = {}
    for k, v in raw.items():
        try:
            result[k] = json.loads(v)
        except (json.JSONDecodeError, TypeError):
            result[k] = v
    return result


class RedisFeed:
    """One pub/sub subscription with its own listener task.

    ``start()`` subscribes and spawns the listener; ``stop()`` cancels it and
    closes the pub/sub connection. Messages are JSON-decoded and awaited on
    ``on_message`` one at a time, so delivery order matches publish order.
    If the connection is lost the listener ends and ``on_error`` gets a
    ``TransportError``; the feed delivers nothing after that.
    """

    def __init__(
        self,
        client: redis.Redis,
        channel: str,
        on_message: MessageHandler,
        on_error: Optional[Callable[[Exception], Awaitable[None]]] = None,
    ):
        self.client = client
        self.channel = channel
        self.on_message = on_message
        self.on_error = on_error
        self.pubsub = None
        self.task: Optional[asyncio.Task] = None

    @translate_errors
    async def start(self):
        if self.task is not None and not self.task.done():
            return
        logger.debug(f"Subscribing to Redis channel {self.channel}")
        self.pubsub = self.client.pubsub()
        await self.pubsub.subscribe(self.channel)
        self.task = asyncio.create_task(self._listen())

    async def _listen(self):
        try:
            while True:
                message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=PUBSUB_POLL_TIMEOUT)
                if message is None:
                    continue
                if message.get("type") != "message":
                    continue
                try:
                    data = json.loads(message["data"])
                except json.JSONDecodeError as e:
                    logger.error(f"Error parsing message on channel {self.channel}: {e}")
                    continue
                try:
                    await self.on_message(data)
                except Exception as e:
                    logger.error(f"Error handling message on channel {self.channel}: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.debug(f"Listener for channel {self.channel} cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in Redis listener for channel {self.channel}: {e}", exc_info=True)
            if self.on_error is not None:
                try:
                    await self.on_error(TransportError(f"Lost feed {self.channel}: {e}"))
                except Exception as callback_error:
                    logger.error(f"Error reporting failure of channel {self.channel}: {callback_error}", exc_info=True)

    async def stop(self):
        task, self.task = self.task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        pubsub, self.pubsub = self.pubsub, None
        if pubsub is not None:
            try:
                await pubsub.unsubscribe(self.channel)
                await pubsub.aclose()
                logger.debug(f"Closed pub/sub connection for channel {self.channel}")
            except Exception as e:
                logger.error(f"Error closing pub/sub for channel {self.channel}: {e}")


class RedisBackend:
    """Realtime Data Service on Redis.

    Tables are sets of hashes (one hash per row, ids kept in insertion order in
    a sorted set), change feeds and presence sync go over pub/sub, presence
    state lives in one hash per channel and bearer tokens are plain keys.
    """

    def __init__(self, client: Optional[redis.Redis] = None):
        if client is None:
            logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
            client = redis.Redis(
                host=REDIS_HOST,
                port=REDIS_PORT,
                password=REDIS_PASSWORD,
                db=REDIS_DB,
                decode_responses=True,
            )
        self.redis_client = client

    @translate_errors
    async def ping(self) -> bool:
        return await self.redis_client.ping()

    async def close(self):
        await self.redis_client.aclose()

    # Rows -----------------------------------------------------------------
    async def _load(self, table: str, row_id: str) -> Optional[dict]:
        raw = await self.redis_client.hgetall(REDIS_ROW_KEY.format(table=table, row_id=row_id))
        if not raw:
            return None
        return _decode_row(raw)

    @translate_errors
    async def get(self, table: str, row_id: str) -> Optional[dict]:
        return await self._load(table, row_id)

    @translate_errors
    async def select(
        self,
        table: str,
        eq: Optional[dict] = None,
        any_of: Optional[Iterable[dict]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[dict]:
        """Rows matching every ``eq`` condition and, when given, at least one ``any_of`` group."""
        any_of = list(any_of or [])
        ids = await self.redis_client.zrange(REDIS_TABLE_IDS_KEY.format(table=table), 0, -1)
        rows = []
        for row_id in ids:
            row = await self._load(table, row_id)
            if row is None:
                continue
            if not matches(row, eq):
                continue
            if any_of and not any(matches(row, group) for group in any_of):
                continue
            rows.append(row)
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by) or ""), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        logger.debug(f"Selected {len(rows)} rows from {table}")
        return rows

    def _key_for(self, table: str, columns, row: dict) -> Optional[str]:
        values = [row.get(c) for c in columns]
        if any(v is None for v in values):
            return None
        return REDIS_UNIQUE_KEY.format(
            table=table,
            columns=",".join(columns),
            values="|".join(str(v) for v in values),
        )

    def _unique_key(self, table: str, row: dict) -> Optional[str]:
        columns = UNIQUE_KEYS.get(table)
        if not columns:
            return None
        return self._key_for(table, columns, row)

    def _conditional_key(self, table: str, row: dict) -> Optional[str]:
        """Unique key the row holds only while it matches its table's condition."""
        if table not in CONDITIONAL_UNIQUE_KEYS:
            return None
        columns, condition = CONDITIONAL_UNIQUE_KEYS[table]
        if not matches(row, condition):
            return None
        return self._key_for(table, columns, row)

    async def _claim(self, table: str, key: str, row_id: str):
        if await self.redis_client.set(key, row_id, nx=True):
            return
        existing_id = await self.redis_client.get(key)
        if existing_id != row_id:
            raise DuplicateRow(table, existing_id)

    async def _release(self, key: str, row_id: str):
        if await self.redis_client.get(key) == row_id:
            await self.redis_client.delete(key)

    async def _write(self, table: str, row: dict):
        key = REDIS_ROW_KEY.format(table=table, row_id=row["id"])
        await self.redis_client.hset(key, mapping=_encode_row(row))
        ids_key = REDIS_TABLE_IDS_KEY.format(table=table)
        if await self.redis_client.zscore(ids_key, row["id"]) is None:
            seq = await self.redis_client.incr(REDIS_TABLE_SEQ_KEY.format(table=table))
            await self.redis_client.zadd(ids_key, {row["id"]: seq})

    async def _publish(self, table: str, event_type: str, new: Optional[dict], old: Optional[dict]):
        event = {"type": event_type, "table": table, "new": new, "old": old, "commit_ts": utc_now_iso()}
        subscribers = await self.redis_client.publish(REDIS_TABLE_CHANNEL.format(table=table), json.dumps(event))
        logger.debug(f"Published {event_type} on {table}, {subscribers} subscribers")

    def _new_row(self, row: dict) -> dict:
        now = utc_now_iso()
        new = dict(row)
        new.setdefault("id", uuid.uuid4().hex)
        new.setdefault("created_at", now)
        new.setdefault("updated_at", now)
        return new

    @translate_errors
    async def insert(self, table: str, row: dict) -> dict:
        new = self._new_row(row)
        claimed = []
        try:
            for key in (self._unique_key(table, new), self._conditional_key(table, new)):
                if key:
                    await self._claim(table, key, new["id"])
                    claimed.append(key)
        except DuplicateRow as e:
            logger.warning(f"Insert into {table} conflicts with row {e.existing_id}")
            for key in claimed:
                await self._release(key, new["id"])
            raise
        await self._write(table, new)
        logger.info(f"Inserted row {new['id']} into {table}")
        await self._publish(table, "INSERT", new, None)
        return new

    @translate_errors
    async def upsert(self, table: str, row: dict) -> dict:
        """Insert, or merge into the row already holding the table's unique key."""
        new = self._new_row(row)
        unique_key = self._unique_key(table, new)
        if unique_key is None:
            raise ValidationError(f"Upsert into {table} needs its unique key columns")
        # SET NX claims the composite key atomically, so two racing upserts end on one row
        claimed = await self.redis_client.set(unique_key, new["id"], nx=True)
        if claimed:
            await self._write(table, new)
            logger.info(f"Upsert inserted row {new['id']} into {table}")
            await self._publish(table, "INSERT", new, None)
            return new

        existing_id = await self.redis_client.get(unique_key)
        old = await self._load(table, existing_id) or {}
        merged = dict(old)
        merged.update({k: v for k, v in row.items() if k not in ("id", "created_at")})
        merged["id"] = existing_id
        merged.setdefault("created_at", new["created_at"])
        merged["updated_at"] = utc_now_iso()
        await self._write(table, merged)
        logger.info(f"Upsert updated row {existing_id} in {table}")
        await self._publish(table, "UPDATE", merged, old)
        return merged

    @translate_errors
    async def update(self, table: str, row_id: str, changes: dict, expected: Optional[dict] = None) -> dict:
        """Merge ``changes`` into a row.

        With ``expected`` the write only lands if the stored row still matches
        it (same predicate as ``select``); otherwise ``ValidationError``. The
        check and the write run under WATCH / MULTI, so a concurrent writer
        either commits first and fails the check, or makes this one retry.
        """
        key = REDIS_ROW_KEY.format(table=table, row_id=row_id)
        claimed = None
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.hgetall(key)
                        if not raw:
                            raise NotFoundError(f"Row {row_id} not found in {table}")
                        old = _decode_row(raw)
                        if expected and not matches(old, expected):
                            logger.warning(f"Update of {row_id} in {table} rejected, row no longer matches {expected}")
                            raise ValidationError(f"Row {row_id} in {table} was changed by someone else")
                        new = dict(old)
                        new.update(changes)
                        new["id"] = row_id
                        new["updated_at"] = utc_now_iso()
                        old_claim = self._conditional_key(table, old)
                        new_claim = self._conditional_key(table, new)
                        if claimed and claimed != new_claim:
                            # the row moved on between retries
                            await self._release(claimed, row_id)
                            claimed = None
                        if new_claim and new_claim != old_claim:
                            await self._claim(table, new_claim, row_id)
                            claimed = new_claim
                        pipe.multi()
                        pipe.hset(key, mapping=_encode_row(new))
                        await pipe.execute()
                        break
                    except WatchError:
                        logger.debug(f"Row {row_id} in {table} changed during update, retrying")
        except BaseException:
            if claimed:
                await self._release(claimed, row_id)
            raise
        if old_claim and old_claim != new_claim:
            await self._release(old_claim, row_id)
        logger.info(f"Updated row {row_id} in {table}: {sorted(changes)}")
        await self._publish(table, "UPDATE", new, old)
        return new

    @translate_errors
    async def delete(self, table: str, eq: dict) -> List[dict]:
        if not eq:
            raise ValidationError("Refusing to delete without a filter")
        deleted = []
        for row in await self.select(table, eq=eq):
            await self.redis_client.delete(REDIS_ROW_KEY.format(table=table, row_id=row["id"]))
            await self.redis_client.zrem(REDIS_TABLE_IDS_KEY.format(table=table), row["id"])
            for key in (self._unique_key(table, row), self._conditional_key(table, row)):
                if key:
                    await self._release(key, row["id"])
            deleted.append(row)
            await self._publish(table, "DELETE", None, row)
        logger.info(f"Deleted {len(deleted)} rows from {table}")
        return deleted

    def table_feed(self, table: str, on_message: MessageHandler, on_error=None) -> RedisFeed:
        return RedisFeed(self.redis_client, REDIS_TABLE_CHANNEL.format(table=table), on_message, on_error)

    # Presence -------------------------------------------------------------
    @translate_errors
    async def presence_state(self, channel: str) -> Dict[str, Any]:
        raw = await self.redis_client.hgetall(REDIS_PRESENCE_KEY.format(channel=channel))
        return _decode_row(raw)

    async def _publish_sync(self, channel: str):
        state = await self.presence_state(channel)
        message = {"type": "sync", "channel": channel, "state": state}
        await self.redis_client.publish(REDIS_PRESENCE_CHANNEL.format(channel=channel), json.dumps(message))
        logger.debug(f"Published presence sync on {channel}: {sorted(state)}")

    @translate_errors
    async def track_presence(self, channel: str, key: str, payload: Optional[dict] = None):
        await self.redis_client.hset(REDIS_PRESENCE_KEY.format(channel=channel), key, json.dumps(payload or {}))
        logger.debug(f"Tracking presence {key} on {channel}")
        await self._publish_sync(channel)

    @translate_errors
    async def untrack_presence(self, channel: str, key: str):
        await self.redis_client.hdel(REDIS_PRESENCE_KEY.format(channel=channel), key)
        logger.debug(f"Untracked presence {key} on {channel}")
        await self._publish_sync(channel)

    def presence_feed(self, channel: str, on_message: MessageHandler, on_error=None) -> RedisFeed:
        return RedisFeed(self.redis_client, REDIS_PRESENCE_CHANNEL.format(channel=channel), on_message, on_error)

    # Identity -------------------------------------------------------------
    @translate_errors
    async def resolve_identity(self, token: str) -> dict:
        if not token:
            raise AuthError("Missing bearer token")
        data = await self.redis_client.hgetall(REDIS_TOKEN_KEY.format(token=token))
        if not data or "user_id" not in data:
            raise AuthError("Invalid or expired token")
        return {"user_id": data["user_id"], "email": data.get("email") or None}

    @translate_errors
    async def issue_token(self, user_id: str, email: Optional[str] = None, ttl: Optional[int] = None) -> str:
        token = uuid.uuid4().hex
        key = REDIS_TOKEN_KEY.format(token=token)
        mapping = {"user_id": user_id}
        if email:
            mapping["email"] = email
        await self.redis_client.hset(key, mapping=mapping)
        if ttl:
            await self.redis_client.expire(key, ttl)
        logger.info(f"Issued token for user {user_id}")
        return token


redis_backend = RedisBackend()
