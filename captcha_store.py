import base64
import secrets
import string
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from captcha.image import ImageCaptcha

from constants import (
    CAPTCHA_HEIGHT,
    CAPTCHA_IGNORED_CHARS,
    CAPTCHA_LENGTH,
    CAPTCHA_TTL_MS,
    CAPTCHA_WIDTH,
)
from logging_config import get_logger

logger = get_logger(__name__)

CAPTCHA_ALPHABET = "".join(
    c for c in string.ascii_letters + string.digits if c not in CAPTCHA_IGNORED_CHARS
)


@dataclass
class CaptchaEntry:
    id: str
    expected_answer: str
    expires_at: float


@dataclass
class CaptchaChallenge:
    id: str
    renderable: str


def render_png(text: str) -> str:
    """Render text as a distorted PNG and return it as a data URI."""
    image = ImageCaptcha(width=CAPTCHA_WIDTH, height=CAPTCHA_HEIGHT)
    data = image.generate(text, format="png").getvalue()
    return "data:image/png;base64," + base64.b64encode(data).decode("ascii")


def _now_ms() -> float:
    return time.time() * 1000


class CaptchaChallengeStore:
    """One-time CAPTCHA challenges held in memory.

    An entry is deleted on its first verification attempt whatever the outcome,
    and unverified entries are dropped by sweep() once expired.
    """

    def __init__(
        self,
        ttl_ms: int = CAPTCHA_TTL_MS,
        renderer: Callable[[str], str] = render_png,
        clock: Callable[[], float] = _now_ms,
    ):
        self._entries: Dict[str, CaptchaEntry] = {}
        self._lock = threading.Lock()
        self._ttl_ms = ttl_ms
        self._renderer = renderer
        self._clock = clock

    def create(self) -> CaptchaChallenge:
        text = "".join(secrets.choice(CAPTCHA_ALPHABET) for _ in range(CAPTCHA_LENGTH))
        renderable = self._renderer(text)
        challenge_id = secrets.token_hex(16)
        with self._lock:
            self._entries[challenge_id] = CaptchaEntry(
                id=challenge_id,
                expected_answer=text,
                expires_at=self._clock() + self._ttl_ms,
            )
        logger.debug(f"Issued captcha {challenge_id}")
        return CaptchaChallenge(id=challenge_id, renderable=renderable)

    def verify(self, challenge_id, answer) -> bool:
        if not isinstance(challenge_id, str):
            return False
        with self._lock:
            entry = self._entries.pop(challenge_id, None)
        if entry is None:
            logger.debug(f"Captcha {challenge_id} unknown or already used")
            return False
        if self._clock() > entry.expires_at:
            logger.debug(f"Captcha {challenge_id} expired")
            return False
        if not isinstance(answer, str):
            return False
        return entry.expected_answer.lower() == answer.strip().lower()

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [cid for cid, entry in self._entries.items() if now > entry.expires_at]
            for cid in expired:
                del self._entries[cid]
        if expired:
            logger.debug(f"Swept {len(expired)} expired captchas")
        return len(expired)

    def pending(self) -> int:
        with self._lock:
            return len(self._entries)
