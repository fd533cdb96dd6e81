"""Caller authentication for privileged gateway routes.

Two independent identities exist: wallet operators (bearer credential, or an
unsigned address header when the dev fallback is enabled) for the JSON API,
and the PIN-backed admin session cookie for the HTML console.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from fastapi import HTTPException, Request

from picks_gateway.api.metrics import AUTH_ATTEMPTS
from picks_gateway.core.addresses import is_address, normalize_address
from picks_gateway.core.errors import InvalidToken, OperatorNotAllowed, TokenExpired, Unauthenticated
from picks_gateway.core.session import SESSION_COOKIE

if TYPE_CHECKING:
    from picks_gateway.core.credentials import CredentialIssuer
    from picks_gateway.core.session import SessionGate

log = structlog.get_logger()

_UNAUTHENTICATED = "Authentication required"


def bearer_token(request: Request) -> str | None:
    """Token from ``Authorization: Bearer <token>``, or None."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def fallback_address(request: Request) -> str | None:
    """Unsigned address claimed via header or query parameter."""
    candidate = request.headers.get("x-wallet-address") or request.query_params.get("address")
    if candidate and is_address(candidate):
        return normalize_address(candidate)
    return None


class WalletAuthenticator:
    """Resolves the operator address behind a privileged API call.

    ``authenticate`` raises Unauthenticated or OperatorNotAllowed; used as a
    FastAPI dependency those become 401 and 403 responses.
    """

    def __init__(
        self,
        issuer: CredentialIssuer,
        dev_fallback: bool = False,
        allowed_addresses: frozenset[str] | None = None,
    ) -> None:
        self._issuer = issuer
        self._dev_fallback = dev_fallback
        self._allowed = allowed_addresses or frozenset()

    @property
    def dev_fallback(self) -> bool:
        return self._dev_fallback

    def authenticate(self, request: Request) -> str:
        address = self._from_token(request)
        method = "wallet"
        if address is None and self._dev_fallback:
            address = fallback_address(request)
            method = "dev_fallback"
        if address is None:
            AUTH_ATTEMPTS.labels(method=method, result="rejected").inc()
            raise Unauthenticated("no bearer credential or accepted address")
        if self._allowed and address not in self._allowed:
            AUTH_ATTEMPTS.labels(method=method, result="forbidden").inc()
            log.warning("operator_not_allowed", address=address, method=method)
            raise OperatorNotAllowed(address)
        AUTH_ATTEMPTS.labels(method=method, result="ok").inc()
        return address

    async def __call__(self, request: Request) -> str:
        try:
            return self.authenticate(request)
        except Unauthenticated as e:
            raise HTTPException(
                status_code=401,
                detail=_UNAUTHENTICATED,
                headers={"WWW-Authenticate": "Bearer"},
            ) from e
        except OperatorNotAllowed as e:
            raise HTTPException(status_code=403, detail="Address not authorized") from e

    def _from_token(self, request: Request) -> str | None:
        token = bearer_token(request)
        if token is None:
            return None
        try:
            return self._issuer.verify(token).address
        except TokenExpired:
            log.info("bearer_token_expired")
        except InvalidToken as e:
            log.info("bearer_token_rejected", error=str(e))
        return None


def admin_session_id(request: Request) -> str | None:
    return request.cookies.get(SESSION_COOKIE) or None


def is_admin(request: Request, gate: SessionGate) -> bool:
    """True when the request carries a live admin session cookie."""
    return gate.is_authenticated(admin_session_id(request))
