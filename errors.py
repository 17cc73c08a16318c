"""Error taxonomy shared by the store adapter, the room logic and the HTTP layer."""


class CollabError(Exception):
    """Base class for every error raised by the collaboration subsystem."""

    status_code = 500
    retryable = False


class TransportError(CollabError):
    """The data service could not be reached. Safe to retry."""

    status_code = 503
    retryable = True


class AuthError(CollabError):
    """Credential missing, invalid or expired. The caller must re-authenticate."""

    status_code = 401


class NotFoundError(CollabError):
    status_code = 404


class RoomNotFound(NotFoundError):
    def __init__(self, room_id: str):
        super().__init__(f"Room {room_id} not found")
        self.room_id = room_id


class NotAMember(CollabError):
    status_code = 403

    def __init__(self, room_id: str, user_id: str):
        super().__init__(f"User {user_id} is not a member of room {room_id}")
        self.room_id = room_id
        self.user_id = user_id


class ValidationError(CollabError):
    """Malformed input or a row that does not fit its schema. No state was changed."""

    status_code = 400


class DuplicateRow(ValidationError):
    """Another row already holds a unique key this write needs."""

    def __init__(self, table: str, existing_id=None):
        super().__init__(f"Duplicate row in {table}")
        self.table = table
        self.existing_id = existing_id
