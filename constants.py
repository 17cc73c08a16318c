import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
RELOAD = os.getenv("RELOAD", "true").lower() == "true"

# Room cap shown in the UI copy ("up to 4 users"); enforced on invite and accept
DEFAULT_MAX_USERS = int(os.getenv("DEFAULT_MAX_USERS", 4))
# Emails that may be invited from the create-room form
MAX_INITIAL_INVITES = int(os.getenv("MAX_INITIAL_INVITES", 3))
OUTPUT_HISTORY_LIMIT = int(os.getenv("OUTPUT_HISTORY_LIMIT", 20))
OUTPUT_CODE_MAX_CHARS = 1000

# Seconds a pub/sub listener blocks on get_message() before re-checking for stop
PUBSUB_POLL_TIMEOUT = float(os.getenv("PUBSUB_POLL_TIMEOUT", 1.0))

FALLBACK_INVITER_NAME = "Someone"
FALLBACK_ROOM_NAME = "Room"
FALLBACK_USERNAME = "User"

TABLE_ROOMS = "rooms"
TABLE_MEMBERS = "members"
TABLE_INVITATIONS = "invitations"
TABLE_PROFILES = "profiles"
TABLE_MESSAGES = "messages"
TABLE_OUTPUTS = "outputs"

# Composite keys the service enforces uniqueness on (used by upsert)
UNIQUE_KEYS = {
    TABLE_MEMBERS: ("room_id", "user_id"),
    TABLE_PROFILES: ("email",),
}

# Uniqueness that only holds while a row matches a condition:
# at most one pending invitation per (room, invitee email)
CONDITIONAL_UNIQUE_KEYS = {
    TABLE_INVITATIONS: (("room_id", "invitee_email"), {"status": "pending"}),
}
