"""Single-use login challenges keyed by wallet address."""

from __future__ import annotations

import hmac
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from picks_gateway.core.addresses import normalize_address

log = structlog.get_logger()


@dataclass(frozen=True)
class IssuedNonce:
    """A challenge handed to a client for signing."""

    address: str
    nonce: str
    issued_at: int
    expires_at: int


class NonceStore:
    """In-process store of outstanding nonces, one per address.

    A nonce is valid until it is consumed by a verified signature or its TTL
    passes. Issuing a new nonce for an address replaces the previous one.
    """

    _MAX_ENTRIES = 10_000

    def __init__(
        self,
        ttl: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, IssuedNonce] = {}
        self._lock = threading.Lock()

    def issue(self, address: str) -> IssuedNonce:
        """Generate 128 bits of entropy for ``address``."""
        normalized = normalize_address(address)
        now = int(self._clock())
        issued = IssuedNonce(
            address=normalized,
            nonce=secrets.token_hex(16),
            issued_at=now,
            expires_at=now + self._ttl,
        )
        with self._lock:
            self._evict_expired(now)
            if normalized not in self._entries and len(self._entries) >= self._MAX_ENTRIES:
                oldest = min(self._entries, key=lambda k: self._entries[k].issued_at)
                del self._entries[oldest]
            self._entries[normalized] = issued
        log.debug("nonce_issued", address=normalized)
        return issued

    def consume(self, address: str, nonce: str) -> bool:
        """Atomically check and invalidate a nonce.

        Returns False for unknown, mismatched or expired nonces. A mismatched
        nonce leaves the outstanding one in place.
        """
        normalized = normalize_address(address)
        now = int(self._clock())
        with self._lock:
            entry = self._entries.get(normalized)
            if entry is None:
                return False
            if entry.expires_at <= now:
                del self._entries[normalized]
                log.info("nonce_expired", address=normalized)
                return False
            if not hmac.compare_digest(entry.nonce.encode(), (nonce or "").encode()):
                return False
            del self._entries[normalized]
        return True

    def _evict_expired(self, now: int) -> None:
        expired = [k for k, v in self._entries.items() if v.expires_at <= now]
        for k in expired:
            del self._entries[k]

    @property
    def count(self) -> int:
        return len(self._entries)
