"""Short-lived cache of decrypted connection credentials.

Entries live for a fixed TTL measured from insertion. Every lookup checks
the persisted connection status through the store first, so a revoked or
suspended connection is refused even while its credentials are cached.

Population is safe under concurrency: each connection id carries a
generation counter bumped by invalidate(). A population that started
before an invalidation is discarded and the lookup retried. After
repeated discards the read is done while holding the cache lock and the
connection is re-checked afterwards, so credentials of a connection
invalidated mid-read are never returned.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from agentvault.services.connection_store import ConnectionStore

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
_MAX_POPULATE_ATTEMPTS = 3


@dataclass(frozen=True)
class CachedCredentials:
    """Decrypted credentials for one connection. repr never shows values."""

    connection_id: str
    user_id: str
    connection_type: str
    scopes: tuple[str, ...]
    fields: dict[str, Any] = field(repr=False)

    def __repr__(self) -> str:
        return (
            f"CachedCredentials(connection_id={self.connection_id!r}, "
            f"type={self.connection_type!r}, fields=<{len(self.fields)} redacted>)"
        )


@dataclass
class _Entry:
    credentials: CachedCredentials
    inserted_at: float
    generation: tuple[int, int]


class CredentialCache:
    """TTL cache in front of ConnectionStore.open_credentials.

    Args:
        store: Connection store (registers this cache as a change listener).
        ttl: Entry lifetime in seconds.
        clock: Monotonic time source (tests inject a fake).
    """

    def __init__(
        self,
        store: ConnectionStore,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: dict[str, _Entry] = {}
        self._generations: dict[str, int] = {}
        self._epoch = 0
        store.add_change_listener(self.invalidate)

    def _generation(self, connection_id: str) -> tuple[int, int]:
        return (self._epoch, self._generations.get(connection_id, 0))

    def get(self, connection_id: str, user_id: str) -> CachedCredentials:
        """Return decrypted credentials for a usable connection.

        Raises:
            ConnectionNotUsable: The connection is not active (checked on every call).
            DecryptionFailed: The stored blob cannot be opened.
        """
        for _ in range(_MAX_POPULATE_ATTEMPTS):
            self._store.load_usable(connection_id, user_id)
            with self._lock:
                generation = self._generation(connection_id)
                entry = self._entries.get(connection_id)
                if (
                    entry is not None
                    and entry.credentials.user_id == user_id
                    and entry.generation == generation
                    and self._clock() - entry.inserted_at < self._ttl
                ):
                    return entry.credentials

            credentials = self._open(connection_id, user_id)
            with self._lock:
                if self._generation(connection_id) == generation:
                    self._entries[connection_id] = _Entry(credentials, self._clock(), generation)
                    return credentials
            logger.debug("Discarding stale population for connection %s", connection_id)

        # Invalidated on every attempt. Other threads cannot invalidate while
        # the lock is held; the trailing status check catches a change made
        # during the read itself.
        with self._lock:
            generation = self._generation(connection_id)
            credentials = self._open(connection_id, user_id)
            self._store.load_usable(connection_id, user_id)
            if self._generation(connection_id) == generation:
                self._entries[connection_id] = _Entry(credentials, self._clock(), generation)
            return credentials

    def _open(self, connection_id: str, user_id: str) -> CachedCredentials:
        view, fields = self._store.open_credentials(connection_id, user_id)
        return CachedCredentials(
            connection_id=view.id,
            user_id=view.user_id,
            connection_type=view.type,
            scopes=view.scopes,
            fields=fields,
        )

    def invalidate(self, connection_id: str, user_id: str | None = None) -> None:
        """Drop a connection's entry and fence off in-flight populations."""
        with self._lock:
            self._generations[connection_id] = self._generations.get(connection_id, 0) + 1
            self._entries.pop(connection_id, None)

    def sweep(self) -> int:
        """Remove expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [
                cid for cid, entry in self._entries.items()
                if now - entry.inserted_at >= self._ttl
            ]
            for cid in expired:
                del self._entries[cid]
        return len(expired)

    def clear(self) -> None:
        """Drop every entry and fence off all in-flight populations."""
        with self._lock:
            self._entries.clear()
            self._epoch += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
