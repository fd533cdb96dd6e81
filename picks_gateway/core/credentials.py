"""Bearer credentials issued after a verified wallet signature.

Tokens are HS256 JWTs carrying ``sub`` (lowercase address), ``iat`` and
``exp``. There is no server-side revocation list: a token is valid exactly
when its signature checks out and ``exp`` is in the future.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import jwt
import structlog

from picks_gateway.core.addresses import normalize_address
from picks_gateway.core.errors import ConfigMissing, InvalidAddress, InvalidToken, TokenExpired

log = structlog.get_logger()

CREDENTIAL_TTL = 3 * 24 * 3600
ALGORITHM = "HS256"

# Public by construction; only ever used when the environment is explicitly development
DEV_SIGNING_SECRET = "picks-gateway-dev-secret"


def resolve_signing_secret(auth_secret: str, admin_pin: str, development: bool) -> str:
    """Pick the credential signing key: AUTH_SECRET, then ADMIN_PIN, then the dev default.

    The dev default is refused outside explicit development contexts, since
    anyone reading this module could forge tokens with it.
    """
    if auth_secret:
        return auth_secret
    if admin_pin:
        log.warning("auth_secret_fallback", source="ADMIN_PIN")
        return admin_pin
    if development:
        log.warning("auth_secret_fallback", source="development_default")
        return DEV_SIGNING_SECRET
    raise ConfigMissing(["AUTH_SECRET"])


@dataclass(frozen=True)
class IssuedCredential:
    token: str
    address: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class VerifiedCredential:
    address: str
    payload: dict[str, Any]


class CredentialIssuer:
    """Issues and verifies address-bound bearer tokens."""

    def __init__(
        self,
        secret: str,
        ttl: int = CREDENTIAL_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ConfigMissing(["AUTH_SECRET"])
        self._secret = secret
        self._ttl = ttl
        self._clock = clock

    def issue(self, address: str) -> IssuedCredential:
        """Sign a token for an address whose signature was already verified."""
        normalized = normalize_address(address)
        now = int(self._clock())
        expires_at = now + self._ttl
        token = jwt.encode(
            {"sub": normalized, "iat": now, "exp": expires_at},
            self._secret,
            algorithm=ALGORITHM,
        )
        log.info("credential_issued", address=normalized, expires_at=expires_at)
        return IssuedCredential(token=token, address=normalized, issued_at=now, expires_at=expires_at)

    def verify(self, token: str) -> VerifiedCredential:
        """Check signature and expiry, then return the normalized subject."""
        if not token:
            raise InvalidToken("token is required")
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["sub", "iat", "exp"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExpired("token expired") from e
        except jwt.InvalidTokenError as e:
            log.debug("credential_rejected", error=str(e))
            raise InvalidToken("token invalid") from e

        try:
            address = normalize_address(payload.get("sub"))
        except InvalidAddress as e:
            raise InvalidToken("token subject is not an address") from e
        return VerifiedCredential(address=address, payload=payload)
