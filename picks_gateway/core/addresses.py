"""Address normalization and EIP-191 challenge signatures."""

from __future__ import annotations

import re
from datetime import datetime, timezone

import structlog
from eth_account import Account
from eth_account.messages import encode_defunct

from picks_gateway.core.errors import InvalidAddress, InvalidSignature

log = structlog.get_logger()

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

CHALLENGE_LABEL = "Sign in to Picks operations"

# 9999-12-31T23:59:59Z, the last instant datetime can render
MAX_ISSUED_AT = 253_402_300_799


def normalize_address(value: object) -> str:
    """Return the lowercase form of a 0x-prefixed 40-hex-digit address.

    Surrounding whitespace is ignored. Anything else that does not match
    the pattern raises InvalidAddress; no checksum repair, no padding.
    """
    if not isinstance(value, str):
        raise InvalidAddress("address must be a string")
    trimmed = value.strip()
    if not _ADDRESS_RE.match(trimmed):
        raise InvalidAddress("address must be 0x followed by 40 hex digits")
    return trimmed.lower()


def is_address(value: object) -> bool:
    try:
        normalize_address(value)
    except InvalidAddress:
        return False
    return True


def format_issued_at(issued_at: int) -> str:
    return datetime.fromtimestamp(issued_at, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_challenge_message(address: str, nonce: str, issued_at: int | None = None) -> str:
    """Build the text a wallet signs to prove ownership of ``address``.

    The result must be byte-identical at issuance and verification, so the
    address is always normalized and the timestamp rendered in UTC.
    """
    lines = [
        CHALLENGE_LABEL,
        "",
        f"Address: {normalize_address(address)}",
        f"Nonce: {nonce}",
    ]
    if issued_at is not None:
        lines.append(f"Issued At: {format_issued_at(issued_at)}")
    return "\n".join(lines)


def recover_signer(message: str, signature: str) -> str:
    """Recover the lowercase signer address of a personal_sign signature."""
    if not isinstance(signature, str) or not signature.strip():
        raise InvalidSignature("signature is required")
    try:
        recovered = Account.recover_message(encode_defunct(text=message), signature=signature.strip())
    except Exception as e:
        log.debug("signature_recovery_failed", error=str(e))
        raise InvalidSignature("signature could not be recovered") from e
    return recovered.lower()


def verify_challenge_signature(
    address: str,
    nonce: str,
    signature: str,
    issued_at: int | None = None,
) -> str:
    """Check that ``signature`` over the challenge was made by ``address``.

    Returns the normalized address. Raises InvalidAddress or InvalidSignature.
    """
    normalized = normalize_address(address)
    try:
        message = build_challenge_message(normalized, nonce, issued_at)
    except (OverflowError, ValueError, OSError) as e:
        raise InvalidSignature("issued-at timestamp out of range") from e
    signer = recover_signer(message, signature)
    if signer != normalized:
        raise InvalidSignature("signature does not match address")
    return normalized
