"""Short-lived storage for in-flight OAuth authorizations.

Between redirecting the user to the provider and receiving the callback, the
PKCE verifier is kept here keyed by the ``state`` parameter. Entries live for
at most ten minutes and can be taken exactly once.

Two implementations share the ``PendingAuthorizationStore`` protocol:

* ``InMemoryPendingAuthorizationStore`` for a single process, with a
  background sweeper thread removing stale entries;
* ``RedisPendingAuthorizationStore`` for deployments running several
  instances behind a load balancer, where the callback may land on a
  different process than the one that started the flow.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

import redis

from mailarchive.configuration.settings import PendingAuthSettings

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600
DEFAULT_SWEEP_INTERVAL_SECONDS = 600


@dataclass(frozen=True)
class PendingAuthorization:
    """PKCE verifier waiting for its callback."""

    state: str
    code_verifier: str
    created_at: float

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now - self.created_at >= ttl_seconds


class PendingAuthorizationStore(Protocol):
    """Single-use, TTL-bounded mapping from state to PKCE verifier."""

    def put(self, state: str, code_verifier: str) -> None:
        ...

    def take_if_valid(self, state: str) -> Optional[str]:
        ...

    def start(self) -> None:
        ...

    def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# In-process store
# ---------------------------------------------------------------------------


class InMemoryPendingAuthorizationStore:
    """Lock-protected dictionary with a periodic sweep."""

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: Dict[str, PendingAuthorization] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def __enter__(self) -> "InMemoryPendingAuthorizationStore":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def put(self, state: str, code_verifier: str) -> None:
        entry = PendingAuthorization(
            state=state, code_verifier=code_verifier, created_at=self._clock()
        )
        with self._lock:
            self._entries[state] = entry

    def take_if_valid(self, state: str) -> Optional[str]:
        """Remove the entry for ``state`` and return its verifier if still fresh."""
        with self._lock:
            entry = self._entries.pop(state, None)
        if entry is None:
            return None
        if entry.is_expired(self._clock(), self.ttl_seconds):
            logger.info("Pending authorization expired before callback")
            return None
        return entry.code_verifier

    def sweep(self) -> int:
        """Drop entries older than the TTL and return how many were removed."""
        now = self._clock()
        with self._lock:
            stale = [
                state
                for state, entry in self._entries.items()
                if entry.is_expired(now, self.ttl_seconds)
            ]
            for state in stale:
                del self._entries[state]
        if stale:
            logger.debug("Swept expired pending authorizations", extra={"count": len(stale)})
        return len(stale)

    def start(self) -> None:
        """Start the background sweeper thread (idempotent)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._run_sweeper, name="pending-auth-sweeper", daemon=True
        )
        self._sweeper.start()

    def close(self) -> None:
        """Stop the sweeper and wait for it to exit."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def _run_sweeper(self) -> None:
        while not self._stop.wait(self.sweep_interval_seconds):
            self.sweep()


# ---------------------------------------------------------------------------
# Shared store
# ---------------------------------------------------------------------------


class RedisPendingAuthorizationStore:
    """Redis-backed store; expiry is enforced by the server.

    ``take_if_valid`` uses ``GETDEL`` so two instances receiving the same
    callback cannot both obtain the verifier.
    """

    key_prefix = "mailarchive:pending_auth:"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Any = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self._redis_url = redis_url
        self._client = client
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = redis.Redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def _key(self, state: str) -> str:
        return f"{self.key_prefix}{state}"

    def put(self, state: str, code_verifier: str) -> None:
        payload = json.dumps({"code_verifier": code_verifier, "created_at": self._clock()})
        self.client.setex(self._key(state), int(self.ttl_seconds), payload)

    def take_if_valid(self, state: str) -> Optional[str]:
        raw = self.client.getdel(self._key(state))
        if not raw:
            return None
        try:
            payload = json.loads(raw)
            entry = PendingAuthorization(
                state=state,
                code_verifier=payload["code_verifier"],
                created_at=float(payload["created_at"]),
            )
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding malformed pending authorization entry")
            return None
        if entry.is_expired(self._clock(), self.ttl_seconds):
            return None
        return entry.code_verifier

    def start(self) -> None:
        self.client.ping()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def create_pending_store(
    settings: PendingAuthSettings, *, clock: Callable[[], float] = time.time
) -> PendingAuthorizationStore:
    """Build the store matching the configured deployment mode.

    The in-memory store is returned with its sweeper already running; the
    caller owns the store and must ``close()`` it.
    """

    if settings.redis_url:
        logger.info("Using Redis pending authorization store")
        return RedisPendingAuthorizationStore(
            settings.redis_url, ttl_seconds=settings.ttl_seconds, clock=clock
        )
    store = InMemoryPendingAuthorizationStore(
        ttl_seconds=settings.ttl_seconds,
        sweep_interval_seconds=settings.sweep_interval_seconds,
        clock=clock,
    )
    store.start()
    return store


__all__ = [
    "InMemoryPendingAuthorizationStore",
    "PendingAuthorization",
    "PendingAuthorizationStore",
    "RedisPendingAuthorizationStore",
    "create_pending_store",
]
