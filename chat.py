import asyncio
from typing import Callable, List

from constants import TABLE_MESSAGES, TABLE_OUTPUTS, OUTPUT_HISTORY_LIMIT, OUTPUT_CODE_MAX_CHARS
from errors import ValidationError
from logging_config import get_logger
from schemas.rooms import Identity, Message, Output, TableEvent
from store import SessionStore, Subscription, narrow

logger = get_logger(__name__)


def _append_feed(store: SessionStore, table: str, model, room_id: str, known: Callable[[str], bool], on_row: Callable) -> Subscription:
    holder = {}

    async def handle(event: TableEvent):
        try:
            row = narrow(model, event.new or {})
        except ValidationError as e:
            logger.error(f"Ignoring malformed {table} row in room {room_id}: {e}")
            return
        # at-least-once delivery: the same insert can arrive twice
        if known(row.id):
            return
        if not holder["subscription"].active:
            return
        result = on_row(row)
        if asyncio.iscoroutine(result):
            await result

    subscription = store.subscribe_to_table_events(table, {"room_id": room_id}, handle, events=("INSERT",))
    holder["subscription"] = subscription
    return subscription


class RoomChat:
    """Group chat history of one room, oldest first."""

    def __init__(self, store: SessionStore, room_id: str):
        self.store = store
        self.room_id = room_id
        self.messages: List[Message] = []

    async def load(self) -> List[Message]:
        self.messages = await self.store.query_rows(
            TABLE_MESSAGES, Message, eq={"room_id": self.room_id}, order_by="created_at"
        )
        return list(self.messages)

    def _known(self, message_id: str) -> bool:
        return any(m.id == message_id for m in self.messages)

    def add(self, message: Message) -> bool:
        if self._known(message.id):
            return False
        self.messages.append(message)
        return True

    async def send(self, identity: Identity, username: str, content: str) -> Message:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Message is empty")
        message = await self.store.insert_row(
            TABLE_MESSAGES,
            Message,
            {
                "room_id": self.room_id,
                "user_id": identity.user_id,
                "username": username,
                "content": content,
                "is_ai": False,
            },
        )
        logger.debug(f"User {identity.user_id} posted message {message.id} in room {self.room_id}")
        return message

    def subscribe(self, on_message: Callable[[Message], object]) -> Subscription:
        async def on_row(message: Message):
            if self.add(message):
                result = on_message(message)
                if asyncio.iscoroutine(result):
                    await result

        return _append_feed(self.store, TABLE_MESSAGES, Message, self.room_id, self._known, on_row)


class OutputLog:
    """Code runs shared into a room, newest first, capped at ``limit`` entries."""

    def __init__(self, store: SessionStore, room_id: str, limit: int = OUTPUT_HISTORY_LIMIT):
        self.store = store
        self.room_id = room_id
        self.limit = limit
        self.outputs: List[Output] = []

    async def load(self) -> List[Output]:
        self.outputs = await self.store.query_rows(
            TABLE_OUTPUTS,
            Output,
            eq={"room_id": self.room_id},
            order_by="created_at",
            descending=True,
            limit=self.limit,
        )
        return list(self.outputs)

    def _known(self, output_id: str) -> bool:
        return any(o.id == output_id for o in self.outputs)

    def add(self, output: Output) -> bool:
        if self._known(output.id):
            return False
        self.outputs = [output] + self.outputs[: self.limit - 1]
        return True

    async def share(self, identity: Identity, username: str, code: str, output: str, language: str) -> Output:
        if not (code or "").strip():
            raise ValidationError("Please enter some code to run")
        shared = await self.store.insert_row(
            TABLE_OUTPUTS,
            Output,
            {
                "room_id": self.room_id,
                "user_id": identity.user_id,
                "username": username,
                "code": code[:OUTPUT_CODE_MAX_CHARS],
                "output": output or "",
                "language": language,
            },
        )
        logger.debug(f"User {identity.user_id} shared output {shared.id} in room {self.room_id}")
        return shared

    def subscribe(self, on_output: Callable[[Output], object]) -> Subscription:
        async def on_row(output: Output):
            if self.add(output):
                result = on_output(output)
                if asyncio.iscoroutine(result):
                    await result

        return _append_feed(self.store, TABLE_OUTPUTS, Output, self.room_id, self._known, on_row)
