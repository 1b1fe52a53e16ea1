import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)
RELOAD = os.getenv("RELOAD", "false").lower() == "true"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
CAPTCHA_REQUIRED = os.getenv("CAPTCHA_REQUIRED", "true").lower() == "true"
# only honour X-Forwarded-For behind a proxy that overwrites it
TRUST_PROXY_HEADERS = os.getenv("TRUST_PROXY_HEADERS", "false").lower() == "true"

# Rooms
MAX_ROOM_SIZE = 2
ROOM_TTL_MS = 60 * 60 * 1000  # 1 hour idle
ROOM_SWEEP_INTERVAL_MS = 5 * 60 * 1000
ROOM_ID_PATTERN = r"^[A-Za-z0-9_-]{4,16}$"
TOKEN_HEX_LENGTH = 64  # sha256 hex digest

# Display names
NAME_MIN_LENGTH = 1
NAME_MAX_LENGTH = 24

# Relay payloads
MAX_PUBLIC_KEY_LENGTH = 1000
MAX_IV_LENGTH = 1000
MAX_PAYLOAD_SIZE = 5 * 1024 * 1024  # 5 MiB
MAX_FRAME_BYTES = 6 * 1024 * 1024  # payload plus framing overhead
MESSAGE_TYPES = ("text", "image", "voice", "gif")
TIMESTAMP_MAX_PAST_MS = 5 * 60 * 1000
TIMESTAMP_MAX_FUTURE_MS = 30 * 1000

# Abuse controls
RATE_LIMIT_MAX = 30
RATE_LIMIT_WINDOW_MS = 10_000
MAX_CONNECTIONS_PER_IP = 5

# CAPTCHA
CAPTCHA_TTL_MS = 5 * 60 * 1000
CAPTCHA_SWEEP_INTERVAL_MS = 2 * 60 * 1000
CAPTCHA_LENGTH = 5
CAPTCHA_IGNORED_CHARS = "0oO1lIi"
CAPTCHA_WIDTH = 200
CAPTCHA_HEIGHT = 60
