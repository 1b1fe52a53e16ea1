# Wire event names. Frames look like {"type": <event>, "data": {...}}.

# client -> server
JOIN_ROOM = "join-room"
KEY_EXCHANGE = "key-exchange"
SYNC_HISTORY = "sync-history"
SEND_MESSAGE = "send-message"
TYPING = "typing"
STOP_TYPING = "stop-typing"
END_CHAT = "end-chat"

# server -> client
JOINED = "joined"
PEER_JOINED = "peer-joined"
ROOM_FULL = "room-full"
RECEIVE_MESSAGE = "receive-message"
ERROR_MSG = "error-msg"
CHAT_ENDED = "chat-ended"
PEER_LEFT = "peer-left"

# user-facing error texts carried by error-msg
ERR_INVALID_ROOM = "Invalid room ID"
ERR_INVALID_NAME = "Invalid name"
ERR_RATE_LIMITED = "Rate limited. Slow down."
ERR_CAPTCHA_FAILED = "CAPTCHA verification failed"
