# tests/conftest.py
import json
import time
from typing import Any, List

import pytest

from backend import RoomLedger
from captcha_store import CaptchaChallengeStore
from connection_gate import ConnectionGate
from relay import ProtocolRelay
from throttle import AbuseThrottle


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeSocket:
    """Stands in for a WebSocket; records every frame the relay sends."""

    def __init__(self, broken: bool = False):
        self.frames: List[dict] = []
        self.broken = broken

    async def send_text(self, text: str) -> None:
        if self.broken:
            raise RuntimeError("socket closed")
        self.frames.append(json.loads(text))

    def types(self) -> List[str]:
        return [f["type"] for f in self.frames]

    def of_type(self, event: str) -> List[dict]:
        return [f for f in self.frames if f["type"] == event]

    def last(self) -> dict:
        return self.frames[-1]

    def clear(self) -> None:
        self.frames.clear()


def fake_render(text: str) -> str:
    return f"data:image/png;base64,{len(text)}"


def now_ms() -> float:
    return time.time() * 1000


def message_payload(room_id: str, **overrides: Any) -> dict:
    payload = {
        "roomId": room_id,
        "sender": "alice",
        "type": "text",
        "ciphertext": "c2VjcmV0IGJ5dGVz",
        "iv": "AAECAwQFBgcICQoL",
        "timestamp": now_ms(),
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def ledger(clock: FakeClock) -> RoomLedger:
    return RoomLedger(clock=clock)


@pytest.fixture()
def throttle(clock: FakeClock) -> AbuseThrottle:
    return AbuseThrottle(clock=clock)


@pytest.fixture()
def captcha_store(clock: FakeClock) -> CaptchaChallengeStore:
    return CaptchaChallengeStore(renderer=fake_render, clock=clock)


@pytest.fixture()
def gate() -> ConnectionGate:
    return ConnectionGate()


@pytest.fixture()
def relay(ledger, throttle, gate, captcha_store) -> ProtocolRelay:
    return ProtocolRelay(ledger, throttle, gate, captcha_store, captcha_required=False)


@pytest.fixture()
def gated_relay(ledger, throttle, gate, captcha_store) -> ProtocolRelay:
    return ProtocolRelay(ledger, throttle, gate, captcha_store, captcha_required=True)
