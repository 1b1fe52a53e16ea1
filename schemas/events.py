import re
import time
from typing import Annotated, Any, List, Literal, Optional, Set, Union

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
)

from constants import (
    MAX_IV_LENGTH,
    MAX_PAYLOAD_SIZE,
    MAX_PUBLIC_KEY_LENGTH,
    NAME_MAX_LENGTH,
    NAME_MIN_LENGTH,
    ROOM_ID_PATTERN,
    TIMESTAMP_MAX_FUTURE_MS,
    TIMESTAMP_MAX_PAST_MS,
)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_BASE64 = r"^[A-Za-z0-9+/_-]+={0,2}$"

RoomId = Annotated[StrictStr, Field(pattern=ROOM_ID_PATTERN)]

ROOM_ID_FIELDS = {"roomId", "room_id"}
NAME_FIELDS = {"displayName", "display_name", "name", "sender"}


def sanitize_name(name: str) -> str:
    """Strip control characters, trim, and clip to the maximum name length."""
    return _CONTROL_CHARS.sub("", name).strip()[:NAME_MAX_LENGTH]


def _validate_name(value: str) -> str:
    if not NAME_MIN_LENGTH <= len(value.strip()) <= NAME_MAX_LENGTH:
        raise ValueError(f"name must be {NAME_MIN_LENGTH}-{NAME_MAX_LENGTH} characters")
    cleaned = sanitize_name(value)
    if not cleaned:
        raise ValueError("name is empty after sanitizing")
    return cleaned


DisplayName = Annotated[StrictStr, AfterValidator(_validate_name)]


def failed_fields(exc: ValidationError) -> Set[str]:
    return {str(err["loc"][0]) for err in exc.errors() if err.get("loc")}


class InboundPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    room_id: RoomId = Field(alias="roomId")


class JoinRoomPayload(InboundPayload):
    display_name: DisplayName = Field(validation_alias=AliasChoices("displayName", "name", "display_name"))
    # observed by some clients, never branched on
    rejoining: Optional[Any] = None
    token: Optional[Any] = None
    captcha_id: Optional[Any] = Field(None, alias="captchaId")
    captcha_answer: Optional[Any] = Field(None, alias="captchaAnswer")


class KeyExchangePayload(InboundPayload):
    public_key: StrictStr = Field(alias="publicKey", max_length=MAX_PUBLIC_KEY_LENGTH)


class SyncHistoryPayload(InboundPayload):
    messages: List[Any]


class SendMessagePayload(InboundPayload):
    sender: DisplayName
    type: Literal["text", "image", "voice", "gif"]
    ciphertext: StrictStr = Field(
        validation_alias=AliasChoices("ciphertext", "encrypted"),
        min_length=1,
        max_length=MAX_PAYLOAD_SIZE,
    )
    iv: StrictStr = Field(min_length=1, max_length=MAX_IV_LENGTH, pattern=_BASE64)
    timestamp: Union[StrictInt, StrictFloat]

    @field_validator("timestamp")
    @classmethod
    def check_timestamp(cls, value):
        now = time.time() * 1000
        if not now - TIMESTAMP_MAX_PAST_MS < value < now + TIMESTAMP_MAX_FUTURE_MS:
            raise ValueError("timestamp outside the accepted window")
        return value


class TypingPayload(InboundPayload):
    name: DisplayName


class RoomPayload(InboundPayload):
    """Payload of events that only name a room (stop-typing, end-chat)."""
