import pytest

from constants import TABLE_MEMBERS, TABLE_ROOMS
from events import EventBus
from invitations import InvitationManager
from roster import MembershipReconciler
from schemas.rooms import Identity
from session import RoomSession
from store import SessionStore
from tests.fakes import InMemoryDataService


@pytest.fixture
def service() -> InMemoryDataService:
    return InMemoryDataService()


@pytest.fixture
def store(service) -> SessionStore:
    return SessionStore(service)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def invitations(store, bus) -> InvitationManager:
    return InvitationManager(store, bus)


@pytest.fixture
def reconciler(store) -> MembershipReconciler:
    return MembershipReconciler(store)


@pytest.fixture
def make_session(store, bus):
    def factory() -> RoomSession:
        return RoomSession(store, InvitationManager(store, bus), MembershipReconciler(store), bus)

    return factory


@pytest.fixture
def alice(service) -> Identity:
    service.register("alice", "alice@example.com", "Alice Smith")
    return Identity(user_id="alice", email="alice@example.com")


@pytest.fixture
def bob(service) -> Identity:
    service.register("bob", "bob@example.com", None)
    return Identity(user_id="bob", email="bob@example.com")


@pytest.fixture
def room(service, alice) -> dict:
    room = service.put(TABLE_ROOMS, {"id": "room-1", "name": "Sprint Planning", "owner_id": alice.user_id, "max_users": 4})
    service.put(TABLE_MEMBERS, {"room_id": room["id"], "user_id": alice.user_id, "username": "alice"})
    return room
