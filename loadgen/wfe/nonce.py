from __future__ import annotations

import collections
import logging

import requests

from ..latency import LatencyMap
from .errors import MissingNonceError, TransportError
from .rwlock import RWLock

LOGGER = logging.getLogger("loadgen.wfe.nonce")

NONCE_HEADER = "Replay-Nonce"
CONNECT_TIMEOUT_S = 3.0


class NoncePool:
    """FIFO pool of anti-replay nonces harvested from server responses."""

    def __init__(self, session: requests.Session, api_base: str, latency: LatencyMap) -> None:
        self._session = session
        self._api_base = api_base.rstrip("/")
        self._latency = latency

        self._lock = RWLock()
        self._pool: collections.deque[str] = collections.deque()

    def acquire(self, path: str, force_fresh: bool = False) -> str:
        if not force_fresh:
            with self._lock.write_locked():
                if self._pool:
                    return self._pool.popleft()
        return self._fetch(path)

    def release(self, nonce: str) -> None:
        if not nonce:
            return
        with self._lock.write_locked():
            self._pool.append(nonce)

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._pool)

    def _fetch(self, path: str) -> str:
        url = f"{self._api_base}{path}"
        with self._latency.timed(f"HEAD {path}"):
            try:
                resp = self._session.head(url, timeout=(CONNECT_TIMEOUT_S, None))
            except requests.RequestException as exc:
                raise TransportError(f"HEAD {url} failed: {exc}") from exc

            nonce = resp.headers.get(NONCE_HEADER)
            if not nonce:
                raise MissingNonceError(url)
        LOGGER.debug("Fetched fresh nonce from %s", url)
        return nonce


__all__ = ["CONNECT_TIMEOUT_S", "NONCE_HEADER", "NoncePool"]
