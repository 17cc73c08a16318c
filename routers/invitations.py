from fastapi import APIRouter, Depends
from typing import List

from dependencies import get_identity, get_invitations, get_store, to_http
from errors import CollabError
from invitations import InvitationManager
from logging_config import get_logger
from schemas.invitations import RespondRequest, RespondResponse, ResolvedInvitation
from schemas.rooms import Identity
from session import RoomSession
from store import SessionStore

logger = get_logger(__name__)

invitations_router = APIRouter(prefix="/invitations", tags=["invitations"])


@invitations_router.get("/", response_model=List[ResolvedInvitation])
async def list_pending_invitations(
    identity: Identity = Depends(get_identity),
    invitations: InvitationManager = Depends(get_invitations),
):
    """Pending invitations addressed to the caller, by user id or by email."""
    try:
        return await invitations.load_pending(identity)
    except CollabError as e:
        logger.warning(f"Loading invitations for {identity.user_id} failed: {e}")
        raise to_http(e) from e


@invitations_router.post("/{invitation_id}/respond", response_model=RespondResponse)
async def respond_to_invitation(
    invitation_id: str,
    body: RespondRequest,
    identity: Identity = Depends(get_identity),
    store: SessionStore = Depends(get_store),
    invitations: InvitationManager = Depends(get_invitations),
):
    logger.info(f"User {identity.user_id} responding to invitation {invitation_id}: accept={body.accept}")
    try:
        updated = await RoomSession(store, invitations).respond(invitation_id, body.accept, identity)
    except CollabError as e:
        logger.warning(f"Responding to invitation {invitation_id} failed: {e}")
        raise to_http(e) from e
    return RespondResponse(invitation_id=updated.id, status=updated.status, room_id=updated.room_id)
