import hashlib
import hmac
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from constants import MAX_ROOM_SIZE, ROOM_TTL_MS
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Member:
    connection_id: str
    display_name: str


@dataclass
class Room:
    room_id: str
    token: str
    created_at: float
    last_activity: float
    users: List[Member] = field(default_factory=list)


@dataclass
class JoinResult:
    accepted: bool
    members: List[Member]
    token: str


@dataclass
class LeaveResult:
    room_id: str
    display_name: str


def _now_ms() -> float:
    return time.time() * 1000


def _copy_members(users: List[Member]) -> List[Member]:
    return [Member(m.connection_id, m.display_name) for m in users]


class RoomLedger:
    """In-memory registry of two-party rooms.

    The ledger is the only writer of room state. Every public method takes the
    ledger lock, so a create-or-join is atomic: two joins racing for the last
    seat can never both succeed.
    """

    def __init__(self, ttl_ms: int = ROOM_TTL_MS, clock: Callable[[], float] = _now_ms):
        self._rooms: Dict[str, Room] = {}
        self._lock = threading.Lock()
        self._ttl_ms = ttl_ms
        self._clock = clock
        # lives only as long as this ledger; never persisted or sent to clients
        self._secret = secrets.token_bytes(32)
        logger.info(f"Initializing RoomLedger with TTL {ttl_ms} ms")

    def generate_token(self, room_id: str) -> str:
        return hmac.new(self._secret, room_id.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_token(self, room_id: str, token) -> bool:
        if not isinstance(room_id, str) or not isinstance(token, str):
            return False
        expected = self.generate_token(room_id).encode("utf-8")
        return hmac.compare_digest(expected, token.encode("utf-8"))

    def create_or_join(self, room_id: str, connection_id: str, display_name: str) -> JoinResult:
        now = self._clock()
        with self._lock:
            room = self._rooms.get(room_id)

            if room is None:
                token = self.generate_token(room_id)
                room = Room(
                    room_id=room_id,
                    token=token,
                    created_at=now,
                    last_activity=now,
                    users=[Member(connection_id, display_name)],
                )
                self._rooms[room_id] = room
                logger.info(f"Room {room_id} created by connection {connection_id}")
                return JoinResult(True, _copy_members(room.users), token)

            for member in room.users:
                if member.connection_id == connection_id:
                    member.display_name = display_name
                    room.last_activity = now
                    logger.debug(f"Connection {connection_id} rejoined room {room_id}")
                    return JoinResult(True, _copy_members(room.users), room.token)

            if len(room.users) >= MAX_ROOM_SIZE:
                logger.info(f"Join rejected: room {room_id} is full ({len(room.users)}/{MAX_ROOM_SIZE})")
                return JoinResult(False, _copy_members(room.users), room.token)

            room.users.append(Member(connection_id, display_name))
            room.last_activity = now
            logger.info(f"Connection {connection_id} joined room {room_id} ({len(room.users)}/{MAX_ROOM_SIZE})")
            return JoinResult(True, _copy_members(room.users), room.token)

    def touch(self, room_id: str):
        with self._lock:
            room = self._rooms.get(room_id)
            if room:
                room.last_activity = self._clock()

    def leave(self, connection_id: str, room_id: Optional[str] = None) -> Optional[LeaveResult]:
        """Remove a connection from whichever room holds it.

        When room_id is given only that room is searched. Returns the vacated room
        id and the member's display name, or None when the connection was not in any
        room. A room left empty is deleted.
        """
        with self._lock:
            if room_id is not None:
                candidates = [(room_id, self._rooms[room_id])] if room_id in self._rooms else []
            else:
                candidates = list(self._rooms.items())
            for room_id, room in candidates:
                for index, member in enumerate(room.users):
                    if member.connection_id != connection_id:
                        continue
                    del room.users[index]
                    if not room.users:
                        del self._rooms[room_id]
                        logger.info(f"Room {room_id} deleted: last member {connection_id} left")
                    else:
                        logger.info(f"Connection {connection_id} left room {room_id}")
                    return LeaveResult(room_id, member.display_name)
        return None

    def destroy_room(self, room_id: str) -> bool:
        with self._lock:
            removed = self._rooms.pop(room_id, None)
        if removed:
            logger.info(f"Room {room_id} destroyed")
        return removed is not None

    def is_member(self, room_id: str, connection_id: str) -> bool:
        with self._lock:
            room = self._rooms.get(room_id)
            if not room:
                return False
            return any(m.connection_id == connection_id for m in room.users)

    def members(self, room_id: str) -> List[Member]:
        with self._lock:
            room = self._rooms.get(room_id)
            return _copy_members(room.users) if room else []

    def get_room(self, room_id: str) -> Optional[Room]:
        """Return a snapshot of the room; changing it does not touch the ledger."""
        with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                return None
            return Room(
                room_id=room.room_id,
                token=room.token,
                created_at=room.created_at,
                last_activity=room.last_activity,
                users=_copy_members(room.users),
            )

    def room_count(self) -> int:
        with self._lock:
            return len(self._rooms)

    def sweep(self) -> List[str]:
        """Delete every room idle for longer than the TTL and return their ids."""
        now = self._clock()
        with self._lock:
            expired = [
                room_id for room_id, room in self._rooms.items()
                if now - room.last_activity > self._ttl_ms
            ]
            for room_id in expired:
                del self._rooms[room_id]
        if expired:
            logger.info(f"Swept {len(expired)} idle rooms")
        return expired
