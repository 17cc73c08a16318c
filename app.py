from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from starlette.websockets import WebSocketState
from routers.rooms import rooms_router
from routers.invitations import invitations_router
from backend import redis_backend
from dependencies import get_service, get_store, to_http
from errors import AuthError, CollabError, NotAMember, RoomNotFound, TransportError
from session import RoomSession
from store import SessionStore
from constants import LOG_LEVEL, LOG_FILE
from logging_config import get_logger, setup_logging
import json

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    logger.info("Shutting down, closing Redis connections")
    await redis_backend.close()


app = FastAPI(lifespan=lifespan)

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins
    allow_credentials=True,
    allow_methods=["*"],  # Allow all HTTP methods
    allow_headers=["*"],  # Allow all headers
)

app.include_router(rooms_router)
app.include_router(invitations_router)

logger.info("FastAPI application initialized")


def _dump(items):
    return [item.model_dump() for item in items]


@app.get("/health")
async def health(service=Depends(get_service)):
    try:
        await service.ping()
    except TransportError as e:
        logger.error(f"Health check failed: {e}")
        raise to_http(e) from e
    return {"ok": True}


async def _handle_client_frame(session: RoomSession, room_id: str, frame: dict):
    """Apply one frame sent by the client. Returns a reply frame or None."""
    kind = frame.get("type")
    if kind == "message":
        await session.send_message(frame.get("content", ""))
    elif kind == "output":
        await session.share_output(frame.get("code", ""), frame.get("output", ""), frame.get("language", "text"))
    elif kind == "invite":
        invitation = await session.invite(room_id, session.identity, frame.get("email", ""))
        return {"type": "invite_sent", "invitation": invitation.model_dump()}
    elif kind == "respond":
        updated = await session.respond(frame.get("invitation_id", ""), bool(frame.get("accept")), session.identity)
        return {"type": "invitation_updated", "invitation": updated.model_dump()}
    else:
        return {"type": "error", "message": f"Unknown frame type: {kind}"}
    return None


@app.websocket("/rooms/{room_id}/ws")
async def websocket_endpoint(room_id: str, websocket: WebSocket, token: str = None, store: SessionStore = Depends(get_store)):
    """Live room session.

    Query parameters:
    - token: bearer token of the connecting user

    Server frames: ``roster``, ``invitations``, ``message``, ``output``,
    ``invite_sent``, ``invitation_updated``, ``error``. Closing the socket
    drops presence but keeps membership; leaving is ``POST /rooms/{id}/leave``.
    """
    logger.info(f"WebSocket connection attempt for room: {room_id}")

    try:
        identity = await store.resolve_identity(token)
    except AuthError as e:
        logger.warning(f"WebSocket connection rejected for room {room_id}: {e}")
        await websocket.close(code=1008, reason="Invalid token")
        return
    except CollabError as e:
        logger.error(f"WebSocket identity lookup failed for room {room_id}: {e}")
        await websocket.close(code=1011, reason="Service unavailable")
        return

    await websocket.accept()
    logger.info(f"WebSocket connection accepted for room: {room_id}, user: {identity.user_id}")

    session = RoomSession(store)
    session.on_roster(lambda roster: websocket.send_json({"type": "roster", "room_id": room_id, "roster": _dump(roster)}))
    session.on_invites(lambda invites: websocket.send_json({"type": "invitations", "invitations": _dump(invites)}))
    session.on_message(lambda message: websocket.send_json({"type": "message", "message": message.model_dump()}))
    session.on_output(lambda output: websocket.send_json({"type": "output", "output": output.model_dump()}))
    session.on_error(lambda error: websocket.send_json({"type": "error", "message": str(error), "retryable": True}))

    close_code = 1000
    try:
        try:
            await session.enter(room_id, identity)
        except (RoomNotFound, NotAMember) as e:
            logger.info(f"WebSocket session refused for room {room_id}: {e}")
            await websocket.send_json({"type": "error", "message": str(e)})
            await websocket.close(code=1008, reason=str(e))
            return

        message_count = 0
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for user {identity.user_id} in room {room_id}")
                break
            message_count += 1
            logger.debug(f"Received frame #{message_count} from user {identity.user_id} in room {room_id}")

            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                # Plain text is a chat message
                frame = {"type": "message", "content": data}

            if not isinstance(frame, dict):
                logger.warning(f"Ignoring non-object frame from {identity.user_id} in room {room_id}")
                await websocket.send_json({"type": "error", "message": "Frames must be JSON objects", "retryable": False})
                continue

            try:
                reply = await _handle_client_frame(session, room_id, frame)
            except CollabError as e:
                # Surfaced to the user as a dismissible notification; the session stays up
                logger.warning(f"Frame from {identity.user_id} in room {room_id} failed: {e}")
                reply = {"type": "error", "message": str(e), "retryable": e.retryable}
            if reply is not None:
                await websocket.send_json(reply)
    except Exception as e:
        logger.error(f"WebSocket error for user {identity.user_id} in room {room_id}: {e}", exc_info=True)
        close_code = 1011
    finally:
        await session.close()
        logger.info(f"Session closed for user {identity.user_id} in room {room_id}")
        if websocket.application_state == WebSocketState.CONNECTED and websocket.client_state == WebSocketState.CONNECTED:
            try:
                await websocket.close(code=close_code)
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")
