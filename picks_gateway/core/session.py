"""PIN-protected admin sessions.

Each successful login gets its own random session id, stored server-side
together with the fingerprint of the PIN it was issued under. Changing
ADMIN_PIN therefore invalidates every outstanding session, and a logout
revokes only the session that presented it.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

log = structlog.get_logger()

SESSION_COOKIE = "admin_session"
SESSION_MAX_AGE = 7 * 24 * 3600
SESSION_VERSION = "admin-session-v1"


@dataclass(frozen=True)
class AdminSession:
    session_id: str
    pin_fingerprint: str
    expires_at: float


class SessionGate:
    """Single-secret admin gate backed by an in-process session table."""

    _MAX_SESSIONS = 1000

    def __init__(
        self,
        pin: str,
        max_age: int = SESSION_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._pin = pin or ""
        self._max_age = max_age
        self._clock = clock
        self._sessions: dict[str, AdminSession] = {}
        self._lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return bool(self._pin)

    @property
    def max_age(self) -> int:
        return self._max_age

    def fingerprint(self) -> str:
        """Deterministic hash of the configured PIN and the session version."""
        return hashlib.sha256(f"{self._pin}:{SESSION_VERSION}".encode()).hexdigest()

    def login(self, pin: str) -> str | None:
        """Return a new session id when ``pin`` matches, else None."""
        if not self.configured:
            return None
        if not hmac.compare_digest((pin or "").encode(), self._pin.encode()):
            log.warning("admin_login_failed")
            return None
        now = self._clock()
        session = AdminSession(
            session_id=secrets.token_urlsafe(32),
            pin_fingerprint=self.fingerprint(),
            expires_at=now + self._max_age,
        )
        with self._lock:
            self._evict_expired(now)
            if len(self._sessions) >= self._MAX_SESSIONS:
                oldest = min(self._sessions, key=lambda k: self._sessions[k].expires_at)
                del self._sessions[oldest]
            self._sessions[session.session_id] = session
        log.info("admin_login", sessions=len(self._sessions))
        return session.session_id

    def is_authenticated(self, session_id: str | None) -> bool:
        """True iff a PIN is configured and ``session_id`` is a live session for it."""
        if not self.configured or not session_id:
            return False
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if session.expires_at <= now:
                del self._sessions[session_id]
                return False
            return hmac.compare_digest(session.pin_fingerprint, self.fingerprint())

    def logout(self, session_id: str | None) -> None:
        if not session_id:
            return
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        if removed is not None:
            log.info("admin_logout")

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, s in self._sessions.items() if s.expires_at <= now]
        for k in expired:
            del self._sessions[k]

    @property
    def count(self) -> int:
        return len(self._sessions)
