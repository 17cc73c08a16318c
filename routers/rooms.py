from fastapi import APIRouter, Depends, HTTPException, Request
from typing import List

from chat import OutputLog, RoomChat
from constants import TABLE_MEMBERS, TABLE_ROOMS
from dependencies import get_identity, get_invitations, get_store, to_http
from directory import RoomDirectory
from errors import CollabError, NotAMember, RoomNotFound, TransportError
from invitations import InvitationManager
from logging_config import get_logger
from roster import merge_roster, presence_channel
from schemas.invitations import Invitation
from schemas.rooms import (
    CreateRoomRequest,
    CreateRoomResponse,
    Identity,
    InviteRequest,
    LeaveRoomResponse,
    Member,
    Message,
    Output,
    Room,
    RoomDetailsResponse,
    RoomSummary,
    SendMessageRequest,
    ShareOutputRequest,
)
from session import RoomSession
from store import SessionStore

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


async def _member_of(store: SessionStore, room_id: str, identity: Identity):
    room = await store.get_row(TABLE_ROOMS, Room, room_id)
    if room is None:
        raise RoomNotFound(room_id)
    members = await store.query_rows(TABLE_MEMBERS, Member, eq={"room_id": room_id})
    membership = next((m for m in members if m.user_id == identity.user_id), None)
    if membership is None:
        raise NotAMember(room_id, identity.user_id)
    return room, members, membership


@rooms_router.post("/", response_model=CreateRoomResponse)
async def create_room(
    body: CreateRoomRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    store: SessionStore = Depends(get_store),
    invitations: InvitationManager = Depends(get_invitations),
):
    logger.info(f"Room creation request from {request.client.host if request.client else 'unknown'}, name: {body.name}, invites: {len(body.invite_emails)}")
    try:
        room, sent = await RoomDirectory(store, invitations).create_room(
            identity, body.name, body.username, body.invite_emails
        )
    except CollabError as e:
        logger.warning(f"Room creation failed for {identity.user_id}: {e}")
        raise to_http(e) from e
    except Exception as e:
        logger.error(f"Error creating room: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create room")
    return CreateRoomResponse(room=room, invitations=sent)


@rooms_router.get("/", response_model=List[RoomSummary])
async def list_rooms(
    identity: Identity = Depends(get_identity),
    store: SessionStore = Depends(get_store),
    invitations: InvitationManager = Depends(get_invitations),
):
    try:
        return await RoomDirectory(store, invitations).list_rooms(identity)
    except CollabError as e:
        logger.warning(f"Listing rooms failed for {identity.user_id}: {e}")
        raise to_http(e) from e


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(
    room_id: str,
    identity: Identity = Depends(get_identity),
    store: SessionStore = Depends(get_store),
):
    """
    Room details with the merged roster.

    - room: the room row
    - roster: members, online ones first, each flagged online / owner
    - is_full: whether the member cap is reached
    """
    logger.info(f"Room details request for {room_id} from {identity.user_id}")
    try:
        room, members, _ = await _member_of(store, room_id, identity)
    except CollabError as e:
        logger.warning(f"Room details failed for {room_id}: {e}")
        raise to_http(e) from e

    try:
        online = await store.presence_keys(presence_channel(room_id))
    except TransportError as e:
        # Presence is best effort, the durable list is still worth returning
        logger.warning(f"Presence unavailable for room {room_id}: {e}")
        online = set()

    return RoomDetailsResponse(
        room=room,
        roster=merge_roster(members, online, room.owner_id),
        is_full=len(members) >= room.max_users,
    )


@rooms_router.post("/{room_id}/invite", response_model=Invitation)
async def invite_to_room(
    room_id: str,
    body: InviteRequest,
    identity: Identity = Depends(get_identity),
    store: SessionStore = Depends(get_store),
    invitations: InvitationManager = Depends(get_invitations),
):
    logger.info(f"Invite request for room {room_id} from {identity.user_id}")
    try:
        return await RoomSession(store, invitations).invite(room_id, identity, body.email)
    except CollabError as e:
        logger.warning(f"Invite to room {room_id} failed: {e}")
        raise to_http(e) from e


@rooms_router.post("/{room_id}/leave", response_model=LeaveRoomResponse)
async def leave_room(
    room_id: str,
    identity: Identity = Depends(get_identity),
    store: SessionStore = Depends(get_store),
    invitations: InvitationManager = Depends(get_invitations),
):
    logger.info(f"Leave room request for {room_id} from {identity.user_id}")
    try:
        left = await RoomSession(store, invitations).leave(room_id, identity)
    except CollabError as e:
        logger.warning(f"Leave room {room_id} failed: {e}")
        raise to_http(e) from e
    return LeaveRoomResponse(room_id=room_id, left=left)


@rooms_router.get("/{room_id}/messages", response_model=List[Message])
async def list_messages(
    room_id: str,
    identity: Identity = Depends(get_identity),
    store: SessionStore = Depends(get_store),
):
    try:
        await _member_of(store, room_id, identity)
        return await RoomChat(store, room_id).load()
    except CollabError as e:
        raise to_http(e) from e


@rooms_router.post("/{room_id}/messages", response_model=Message)
async def send_message(
    room_id: str,
    body: SendMessageRequest,
    identity: Identity = Depends(get_identity),
    store: SessionStore = Depends(get_store),
):
    try:
        _, _, membership = await _member_of(store, room_id, identity)
        return await RoomChat(store, room_id).send(identity, body.username or membership.username, body.content)
    except CollabError as e:
        logger.warning(f"Message to room {room_id} failed: {e}")
        raise to_http(e) from e


@rooms_router.get("/{room_id}/outputs", response_model=List[Output])
async def list_outputs(
    room_id: str,
    identity: Identity = Depends(get_identity),
    store: SessionStore = Depends(get_store),
):
    try:
        await _member_of(store, room_id, identity)
        return await OutputLog(store, room_id).load()
    except CollabError as e:
        raise to_http(e) from e


@rooms_router.post("/{room_id}/outputs", response_model=Output)
async def share_output(
    room_id: str,
    body: ShareOutputRequest,
    identity: Identity = Depends(get_identity),
    store: SessionStore = Depends(get_store),
):
    try:
        _, _, membership = await _member_of(store, room_id, identity)
        return await OutputLog(store, room_id).share(
            identity, body.username or membership.username, body.code, body.output, body.language
        )
    except CollabError as e:
        logger.warning(f"Sharing output to room {room_id} failed: {e}")
        raise to_http(e) from e
