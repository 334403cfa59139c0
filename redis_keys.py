REDIS_SESSION_ROOM_KEY = "session:room:{session_id}" # browser session id - current room code
REDIS_SESSION_CHAT_KEY = "session:chat:{session_id}" # browser session id - list of chat message JSON blobs

# Both keys share one TTL that is refreshed on every write, so a session that
# goes quiet eventually disappears the way browser session storage does.
