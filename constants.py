import os

APP_NAME = os.getenv("APP_NAME", "SyncMate")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 3000))

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Lifetime of a stored client session; stands in for "until the browser closes"
SESSION_TTL = int(os.getenv("SESSION_TTL", 86400))
# "memory" or "redis"
SESSION_BACKEND = os.getenv("SESSION_BACKEND", "memory")
SESSION_ID = os.getenv("SESSION_ID", "default")

SERVER_URL = os.getenv("SERVER_URL", "ws://localhost:3000/ws")
RECONNECT_ATTEMPTS = int(os.getenv("RECONNECT_ATTEMPTS", 5))
RECONNECT_DELAY = float(os.getenv("RECONNECT_DELAY", 1.0))
HEARTBEAT_INTERVAL = float(os.getenv("HEARTBEAT_INTERVAL", 20.0))
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", 10.0))
WATCHED_HOST = os.getenv("WATCHED_HOST", "youtube.com")

ROOM_ID_LENGTH = 6
ROOM_NOT_FOUND = "Room not found"

# Playback positions closer than this are left alone
SEEK_TOLERANCE = 0.5
PLAYBACK_SETTLE_SECONDS = 0.3
NAVIGATION_SETTLE_SECONDS = 2.0
PLAY_TIMEOUT_SECONDS = 2.0
PLAYER_ATTACH_INTERVAL = 2.0
SESSION_RECOVERY_INTERVAL = 3.0

DEFAULT_AVATAR = "\U0001F98A"
