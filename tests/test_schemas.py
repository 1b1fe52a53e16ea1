# tests/test_schemas.py
import pytest
from pydantic import ValidationError

from conftest import message_payload, now_ms
from schemas.events import (
    JoinRoomPayload,
    KeyExchangePayload,
    SendMessagePayload,
    SyncHistoryPayload,
    failed_fields,
    sanitize_name,
)


@pytest.mark.parametrize("room_id", ["abcd", "A-b_9xyz", "x" * 16])
def test_valid_room_ids(room_id: str) -> None:
    assert JoinRoomPayload.model_validate({"roomId": room_id, "displayName": "a"}).room_id == room_id


@pytest.mark.parametrize("room_id", ["abc", "x" * 17, "room 123", "room/123", 12345678, None])
def test_invalid_room_ids(room_id) -> None:
    with pytest.raises(ValidationError) as exc:
        JoinRoomPayload.model_validate({"roomId": room_id, "displayName": "alice"})
    assert "roomId" in failed_fields(exc.value)


def test_join_accepts_legacy_name_field() -> None:
    payload = JoinRoomPayload.model_validate({"roomId": "r00m1234", "name": "  bob  ", "rejoining": True})
    assert payload.display_name == "bob"


@pytest.mark.parametrize("name", ["", "   ", "x" * 25, 42, "\x01\x02"])
def test_invalid_names(name) -> None:
    with pytest.raises(ValidationError):
        JoinRoomPayload.model_validate({"roomId": "r00m1234", "displayName": name})


def test_sanitize_name_strips_control_characters() -> None:
    assert sanitize_name(" al\x00ice\x7f ") == "alice"


def test_public_key_bound() -> None:
    assert KeyExchangePayload.model_validate({"roomId": "r00m1234", "publicKey": "k" * 1000})
    with pytest.raises(ValidationError):
        KeyExchangePayload.model_validate({"roomId": "r00m1234", "publicKey": "k" * 1001})
    with pytest.raises(ValidationError):
        KeyExchangePayload.model_validate({"roomId": "r00m1234", "publicKey": {"x": 1}})


def test_sync_history_requires_list() -> None:
    assert SyncHistoryPayload.model_validate({"roomId": "r00m1234", "messages": [{"any": "thing"}, 3]})
    with pytest.raises(ValidationError):
        SyncHistoryPayload.model_validate({"roomId": "r00m1234", "messages": "not a list"})


def test_send_message_accepts_legacy_encrypted_field() -> None:
    data = message_payload("r00m1234")
    data["encrypted"] = data.pop("ciphertext")
    assert SendMessagePayload.model_validate(data).ciphertext == "c2VjcmV0IGJ5dGVz"


@pytest.mark.parametrize(
    "overrides",
    [
        {"type": "video"},
        {"sender": ""},
        {"sender": "s" * 25},
        {"ciphertext": ""},
        {"ciphertext": 123},
        {"iv": "not base64!"},
        {"iv": ""},
        {"timestamp": "now"},
        {"timestamp": True},
    ],
)
def test_send_message_rejects_bad_fields(overrides) -> None:
    with pytest.raises(ValidationError):
        SendMessagePayload.model_validate(message_payload("r00m1234", **overrides))


def test_send_message_timestamp_window() -> None:
    now = now_ms()
    assert SendMessagePayload.model_validate(message_payload("r00m1234", timestamp=now - 299_000))
    assert SendMessagePayload.model_validate(message_payload("r00m1234", timestamp=now + 29_000))
    with pytest.raises(ValidationError):
        SendMessagePayload.model_validate(message_payload("r00m1234", timestamp=now - 301_000))
    with pytest.raises(ValidationError):
        SendMessagePayload.model_validate(message_payload("r00m1234", timestamp=now + 31_000))
