import threading
from typing import Dict, Optional

from constants import MAX_CONNECTIONS_PER_IP, TRUST_PROXY_HEADERS
from logging_config import get_logger

logger = get_logger(__name__)


def client_address(headers, peer_host: Optional[str], trust_proxy: bool = TRUST_PROXY_HEADERS) -> str:
    """Resolve the source address used for the per-address connection cap.

    X-Forwarded-For is client controlled unless a reverse proxy overwrites it, so its
    first hop is only used when trust_proxy is set. Otherwise the socket peer wins.
    """
    forwarded = headers.get("x-forwarded-for") if trust_proxy and headers is not None else None
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer_host or "unknown"


class ConnectionGate:
    """Caps concurrent connections per source address."""

    def __init__(self, max_per_address: int = MAX_CONNECTIONS_PER_IP):
        self.max_per_address = max_per_address
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def acquire(self, address: str) -> bool:
        with self._lock:
            current = self._counts.get(address, 0)
            if current >= self.max_per_address:
                logger.warning(f"Connection refused: {address} already has {current} connections")
                return False
            self._counts[address] = current + 1
            return True

    def release(self, address: str):
        with self._lock:
            current = self._counts.get(address, 0)
            if current <= 1:
                self._counts.pop(address, None)
            else:
                self._counts[address] = current - 1

    def count(self, address: str) -> int:
        with self._lock:
            return self._counts.get(address, 0)
