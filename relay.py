import asyncio
import json
import uuid
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

import events
from backend import LeaveResult, RoomLedger
from captcha_store import CaptchaChallengeStore
from connection_gate import ConnectionGate
from constants import CAPTCHA_REQUIRED, MAX_FRAME_BYTES
from logging_config import get_logger
from schemas.events import (
    NAME_FIELDS,
    ROOM_ID_FIELDS,
    JoinRoomPayload,
    KeyExchangePayload,
    RoomPayload,
    SendMessagePayload,
    SyncHistoryPayload,
    TypingPayload,
    failed_fields,
)
from throttle import AbuseThrottle

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    UNJOINED = "unjoined"
    SOLO = "solo"
    PAIRED = "paired"  # key exchange pending
    SECURED = "secured"
    ENDED = "ended"


class Connection:
    """One client socket as seen by the relay.

    websocket only needs an async send_text(str); the FastAPI WebSocket is used in
    production and a recording fake in tests.
    """

    def __init__(self, connection_id: str, address: str, websocket):
        self.id = connection_id
        self.address = address
        self.websocket = websocket
        self.room_id: Optional[str] = None
        self.display_name: Optional[str] = None
        self.state = ConnectionState.UNJOINED
        self.initiator = False
        self.sent_public_key = False
        self.closed = False

    async def send(self, event: str, data: Optional[dict] = None) -> bool:
        frame = {"type": event}
        if data is not None:
            frame["data"] = data
        try:
            await self.websocket.send_text(json.dumps(frame))
            return True
        except Exception as e:
            # best effort: a peer that went away simply misses the event
            logger.warning(f"Error sending {event} to connection {self.id}: {e}")
            return False

    def reset_handshake(self, state: ConnectionState):
        self.state = state
        self.sent_public_key = False
        self.initiator = False


Handler = Callable[[Connection, dict], Awaitable[None]]


class ProtocolRelay:
    """Sequences join, key exchange, message relay and teardown for every connection.

    Payloads are validated into pydantic models before any field is read. Events
    from connections that are not members of the named room are dropped exactly like
    malformed events, so nothing leaks about which rooms exist.
    """

    def __init__(
        self,
        ledger: RoomLedger,
        throttle: AbuseThrottle,
        gate: ConnectionGate,
        captcha_store: CaptchaChallengeStore,
        captcha_required: bool = CAPTCHA_REQUIRED,
    ):
        self.ledger = ledger
        self.throttle = throttle
        self.gate = gate
        self.captcha_store = captcha_store
        self.captcha_required = captcha_required

        # room_id -> connection ids attached to that room on this process
        self._channels: Dict[str, Set[str]] = {}
        self._connections: Dict[str, Connection] = {}

        self._handlers: Dict[str, Handler] = {
            events.JOIN_ROOM: self._on_join_room,
            events.KEY_EXCHANGE: self._on_key_exchange,
            events.SYNC_HISTORY: self._on_sync_history,
            events.SEND_MESSAGE: self._on_send_message,
            events.TYPING: self._on_typing,
            events.STOP_TYPING: self._on_stop_typing,
            events.END_CHAT: self._on_end_chat,
        }

    # ---------- connection lifecycle ---------- #

    def connect(self, websocket, address: str) -> Optional[Connection]:
        """Admit a new socket, or return None when its address is over the cap."""
        if not self.gate.acquire(address):
            return None
        connection = Connection(uuid.uuid4().hex, address, websocket)
        self._connections[connection.id] = connection
        logger.info(f"Connection {connection.id} admitted from {address}")
        return connection

    async def disconnect(self, connection: Connection):
        if connection.closed:
            return
        connection.closed = True
        self._connections.pop(connection.id, None)
        self.gate.release(connection.address)
        self.throttle.remove(connection.id)

        result = self.ledger.leave(connection.id)
        self._detach(connection)
        connection.state = ConnectionState.ENDED
        logger.info(f"Connection {connection.id} disconnected")

        if result:
            for peer in self._attached(result.room_id, exclude=connection.id):
                peer.reset_handshake(ConnectionState.SOLO)
            await self._emit(result.room_id, events.PEER_LEFT, {"name": result.display_name}, exclude=connection.id)

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def attached_ids(self, room_id: str) -> Set[str]:
        return set(self._channels.get(room_id, ()))

    # ---------- inbound frames ---------- #

    async def handle_frame(self, connection: Connection, raw: str):
        # utf-8 is at least one byte per char, so the cheap length test goes first
        if len(raw) > MAX_FRAME_BYTES or len(raw.encode("utf-8")) > MAX_FRAME_BYTES:
            logger.warning(f"Dropping oversized frame from {connection.id}")
            return
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.debug(f"Dropping non-JSON frame from {connection.id}")
            return
        if not isinstance(frame, dict):
            return
        await self.dispatch(connection, frame.get("type"), frame.get("data"))

    async def dispatch(self, connection: Connection, event, data):
        handler = self._handlers.get(event) if isinstance(event, str) else None
        if handler is None:
            logger.debug(f"Dropping unknown event {event!r} from {connection.id}")
            return
        if not isinstance(data, dict):
            logger.debug(f"Dropping {event} from {connection.id}: payload is not an object")
            return
        try:
            await handler(connection, data)
        except Exception as e:
            logger.error(f"Error handling {event} from connection {connection.id}: {e}", exc_info=True)

    # ---------- event handlers ---------- #

    async def _on_join_room(self, connection: Connection, data: dict):
        try:
            payload = JoinRoomPayload.model_validate(data)
        except ValidationError as e:
            fields = failed_fields(e)
            if fields & ROOM_ID_FIELDS:
                await connection.send(events.ERROR_MSG, {"message": events.ERR_INVALID_ROOM})
            elif fields & NAME_FIELDS:
                await connection.send(events.ERROR_MSG, {"message": events.ERR_INVALID_NAME})
            return

        room_id = payload.room_id
        already_member = self.ledger.is_member(room_id, connection.id)
        if self.captcha_required and not already_member and not self._passes_entry_check(payload):
            logger.info(f"Join to room {room_id} by {connection.id} failed entry check")
            await connection.send(events.ERROR_MSG, {"message": events.ERR_CAPTCHA_FAILED})
            return

        result = self.ledger.create_or_join(room_id, connection.id, payload.display_name)
        if not result.accepted:
            await connection.send(events.ROOM_FULL)
            return

        # channel bookkeeping must finish before the first await so a concurrent
        # end-chat on either room cannot leave this connection attached to a dead room
        previous_room = connection.room_id
        vacated = None
        if previous_room and previous_room != room_id:
            vacated = self._vacate(connection, previous_room)

        self._attach(connection, room_id)
        connection.display_name = payload.display_name
        peer = next((m for m in result.members if m.connection_id != connection.id), None)

        if peer and not already_member:
            connection.reset_handshake(ConnectionState.PAIRED)
            for other in self._attached(room_id, exclude=connection.id):
                other.reset_handshake(ConnectionState.PAIRED)
                # whoever sees peer-joined is expected to send its public key first
                other.initiator = True
        elif not peer:
            connection.reset_handshake(ConnectionState.SOLO)

        await connection.send(events.JOINED, {
            "token": result.token,
            "peerName": peer.display_name if peer else None,
        })
        if vacated:
            await self._emit(previous_room, events.PEER_LEFT, {"name": vacated.display_name}, exclude=connection.id)
        await self._emit(room_id, events.PEER_JOINED, {"name": payload.display_name}, exclude=connection.id)

    async def _on_key_exchange(self, connection: Connection, data: dict):
        payload = self._validate(KeyExchangePayload, data, connection)
        if payload is None or not self._authorized(connection, payload.room_id):
            return

        connection.sent_public_key = True
        members = self._attached(payload.room_id)
        if len(members) > 1 and all(m.sent_public_key for m in members):
            for member in members:
                member.state = ConnectionState.SECURED
            logger.info(f"Room {payload.room_id} key exchange complete")

        await self._emit(payload.room_id, events.KEY_EXCHANGE, {"publicKey": payload.public_key}, exclude=connection.id)

    async def _on_sync_history(self, connection: Connection, data: dict):
        payload = self._validate(SyncHistoryPayload, data, connection)
        if payload is None or not self._authorized(connection, payload.room_id):
            return
        await self._emit(payload.room_id, events.SYNC_HISTORY, {"messages": payload.messages}, exclude=connection.id)

    async def _on_send_message(self, connection: Connection, data: dict):
        if not self.throttle.check(connection.id):
            await connection.send(events.ERROR_MSG, {"message": events.ERR_RATE_LIMITED})
            return

        payload = self._validate(SendMessagePayload, data, connection)
        if payload is None or not self._authorized(connection, payload.room_id):
            return

        self.ledger.touch(payload.room_id)
        await self._emit(payload.room_id, events.RECEIVE_MESSAGE, {
            "sender": payload.sender,
            "type": payload.type,
            "ciphertext": payload.ciphertext,
            "iv": payload.iv,
            "timestamp": payload.timestamp,
        }, exclude=connection.id)

    async def _on_typing(self, connection: Connection, data: dict):
        payload = self._validate(TypingPayload, data, connection)
        if payload is None or not self._authorized(connection, payload.room_id):
            return
        await self._emit(payload.room_id, events.TYPING, {"name": payload.name}, exclude=connection.id)

    async def _on_stop_typing(self, connection: Connection, data: dict):
        payload = self._validate(RoomPayload, data, connection)
        if payload is None or not self._authorized(connection, payload.room_id):
            return
        await self._emit(payload.room_id, events.STOP_TYPING, exclude=connection.id)

    async def _on_end_chat(self, connection: Connection, data: dict):
        payload = self._validate(RoomPayload, data, connection)
        if payload is None or not self._authorized(connection, payload.room_id):
            return

        room_id = payload.room_id
        await self._emit(room_id, events.CHAT_ENDED, exclude=connection.id)
        self.ledger.destroy_room(room_id)
        evicted = self._evict(room_id)
        logger.info(f"Chat in room {room_id} ended by {connection.id}, evicted {evicted} connections")

    # ---------- sweeps ---------- #

    def sweep_rooms(self) -> List[str]:
        """Expire idle rooms in the ledger and detach their sockets."""
        expired = self.ledger.sweep()
        for room_id in expired:
            self._evict(room_id)
        return expired

    # ---------- helpers ---------- #

    def _passes_entry_check(self, payload: JoinRoomPayload) -> bool:
        # a valid room token proves earlier membership and skips the captcha
        if payload.token is not None and self.ledger.verify_token(payload.room_id, payload.token):
            return True
        if payload.captcha_id is None:
            return False
        return self.captcha_store.verify(payload.captcha_id, payload.captcha_answer)

    def _validate(self, model, data: dict, connection: Connection):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.debug(f"Dropping invalid {model.__name__} from {connection.id}: {e.error_count()} errors")
            return None

    def _authorized(self, connection: Connection, room_id: str) -> bool:
        if self.ledger.is_member(room_id, connection.id):
            return True
        logger.debug(f"Dropping event for room {room_id}: {connection.id} is not a member")
        return False

    def _attach(self, connection: Connection, room_id: str):
        self._channels.setdefault(room_id, set()).add(connection.id)
        connection.room_id = room_id

    def _detach(self, connection: Connection):
        room_id = connection.room_id
        if room_id is None:
            return
        channel = self._channels.get(room_id)
        if channel is not None:
            channel.discard(connection.id)
            if not channel:
                del self._channels[room_id]
        connection.room_id = None

    def _evict(self, room_id: str) -> int:
        channel = self._channels.pop(room_id, set())
        for connection_id in channel:
            connection = self._connections.get(connection_id)
            if connection is not None:
                connection.room_id = None
                connection.state = ConnectionState.ENDED
        return len(channel)

    def _vacate(self, connection: Connection, room_id: str) -> Optional[LeaveResult]:
        result = self.ledger.leave(connection.id, room_id=room_id)
        self._detach(connection)
        if result:
            for peer in self._attached(room_id, exclude=connection.id):
                peer.reset_handshake(ConnectionState.SOLO)
        return result

    def _attached(self, room_id: str, exclude: Optional[str] = None) -> List[Connection]:
        return [
            self._connections[cid]
            for cid in self._channels.get(room_id, ())
            if cid != exclude and cid in self._connections and self.ledger.is_member(room_id, cid)
        ]

    async def _emit(self, room_id: str, event: str, data: Optional[dict] = None, exclude: Optional[str] = None) -> int:
        targets = self._attached(room_id, exclude=exclude)
        if targets:
            await asyncio.gather(*(t.send(event, data) for t in targets))
            logger.debug(f"Relayed {event} to {len(targets)} connections in room {room_id}")
        return len(targets)
