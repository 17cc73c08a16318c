REDIS_ROW_KEY = "table:{table}:row:{row_id}" # hash - one row, values JSON encoded
REDIS_TABLE_IDS_KEY = "table:{table}:ids" # sorted set - row id scored by insertion sequence
REDIS_TABLE_SEQ_KEY = "table:{table}:ids:seq" # string - counter feeding the insertion sequence
REDIS_UNIQUE_KEY = "table:{table}:unique:{columns}:{values}" # string - composite key -> row id holding it
REDIS_TABLE_CHANNEL = "feed:{table}" # pub/sub channel carrying INSERT/UPDATE/DELETE events
REDIS_PRESENCE_KEY = "presence:{channel}" # hash - presence key -> JSON payload
REDIS_PRESENCE_CHANNEL = "presence:sync:{channel}" # pub/sub channel carrying presence sync events
REDIS_TOKEN_KEY = "auth:token:{token}" # hash - bearer token -> user_id, email

# **Example `table:members:row:{id}` hash fields**
# - `id` = "9f2c..."
# - `room_id` = "\"4b1a...\""
# - `user_id` = "\"u_1\""
# - `username` = "\"alice\""
# - `status` = "\"active\""
# - `joined_at` = ISO timestamp

# **Example change event published on `feed:{table}`**
# {"type": "INSERT", "table": "invitations", "new": {...row...}, "old": null, "commit_ts": "..."}

# **Example presence sync event published on `presence:sync:{channel}`**
# {"type": "sync", "channel": "room:4b1a...", "state": {"u_1": {"user_id": "u_1"}}}
