REDIS_ROOM_KEY = "room:meta:{code}" # room code - hash with host, guest, created_at
REDIS_CONN_ROOM_KEY = "conn:room:{connection_id}" # connection id - code of the room it sits in
REDIS_CONN_CHANNEL = "conn:channel:{connection_id}" # connection id - pub/sub channel for relayed envelopes
REDIS_CONN_CHANNEL_PATTERN = "conn:channel:*"
REDIS_REGISTRY_LOCK = "rooms:lock" # held around every registry mutation

# **Example `room:meta:{code}` hash fields**
# - `code` = `{code}`
# - `host` = connection id (absent when the slot is empty)
# - `guest` = connection id (absent when the slot is empty)
# - `created_at` = ISO timestamp
