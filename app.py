from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from backend import RoomLedger
from captcha_store import CaptchaChallengeStore
from connection_gate import ConnectionGate, client_address
from constants import (
    CAPTCHA_REQUIRED,
    CAPTCHA_SWEEP_INTERVAL_MS,
    CORS_ORIGINS,
    LOG_FILE,
    LOG_LEVEL,
    ROOM_SWEEP_INTERVAL_MS,
    TRUST_PROXY_HEADERS,
)
from logging_config import get_logger, setup_logging
from relay import ProtocolRelay
from routers.captcha import captcha_router
from sweeper import PeriodicSweep
from throttle import AbuseThrottle

setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "camera=(), geolocation=(), payment=(), usb=()",
    "Content-Security-Policy": "; ".join([
        "default-src 'self'",
        "img-src 'self' data: blob:",
        "media-src 'self' data: blob:",
        "connect-src 'self' ws: wss:",
        "object-src 'none'",
        "frame-ancestors 'none'",
        "base-uri 'self'",
        "form-action 'self'",
    ]),
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
}

CLOSE_POLICY_VIOLATION = 1008


def create_app(
    captcha_required: bool = CAPTCHA_REQUIRED,
    trust_proxy_headers: bool = TRUST_PROXY_HEADERS,
) -> FastAPI:
    """Build the application with a fresh set of in-memory services.

    Every call gets its own ledger, throttle, gate and captcha store, so tests can
    create isolated instances. Background sweeps run for the lifespan of the app.
    """
    ledger = RoomLedger()
    throttle = AbuseThrottle()
    gate = ConnectionGate()
    captcha_store = CaptchaChallengeStore()
    relay = ProtocolRelay(ledger, throttle, gate, captcha_store, captcha_required=captcha_required)

    sweeps = [
        PeriodicSweep("room", ROOM_SWEEP_INTERVAL_MS / 1000, relay.sweep_rooms),
        PeriodicSweep("captcha", CAPTCHA_SWEEP_INTERVAL_MS / 1000, captcha_store.sweep),
    ]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for sweep in sweeps:
            sweep.start()
        try:
            yield
        finally:
            for sweep in sweeps:
                await sweep.stop()

    app = FastAPI(title="PairChat Relay", lifespan=lifespan)
    app.state.ledger = ledger
    app.state.throttle = throttle
    app.state.gate = gate
    app.state.captcha_store = captcha_store
    app.state.relay = relay
    app.state.sweeps = sweeps

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        return response

    app.include_router(captcha_router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Relay socket. Frames are JSON objects {"type": event, "data": payload}."""
        address = client_address(
            websocket.headers,
            websocket.client.host if websocket.client else None,
            trust_proxy=trust_proxy_headers,
        )
        connection = relay.connect(websocket, address)
        if connection is None:
            logger.info(f"WebSocket connection rejected: too many connections from {address}")
            await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Too many connections from this IP")
            return

        try:
            await websocket.accept()
            logger.debug(f"WebSocket accepted for connection {connection.id}")
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info(f"WebSocket disconnected normally for connection {connection.id}")
                    break
                text = message.get("text")
                if text is None:
                    # binary frames are not part of the protocol
                    continue
                await relay.handle_frame(connection, text)
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection.id}: {e}", exc_info=True)
        finally:
            await relay.disconnect(connection)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
