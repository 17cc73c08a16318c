from typing import Optional

from fastapi import Depends, Header, HTTPException

from backend import redis_backend
from errors import AuthError, CollabError, TransportError
from invitations import InvitationManager
from logging_config import get_logger
from schemas.rooms import Identity
from store import SessionStore

logger = get_logger(__name__)


def get_service():
    return redis_backend


def get_store(service=Depends(get_service)) -> SessionStore:
    return SessionStore(service)


def get_invitations(store: SessionStore = Depends(get_store)) -> InvitationManager:
    return InvitationManager(store)


def to_http(e: CollabError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e) or e.__class__.__name__)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_identity(
    authorization: Optional[str] = Header(None),
    store: SessionStore = Depends(get_store),
) -> Identity:
    token = bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    try:
        return await store.resolve_identity(token)
    except AuthError as e:
        logger.warning(f"Rejected credential: {e}")
        raise to_http(e) from e
    except TransportError as e:
        logger.error(f"Could not resolve identity: {e}")
        raise to_http(e) from e
