"""Error taxonomy for authentication and deployment orchestration."""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all gateway domain errors."""


class InvalidAddress(GatewayError):
    """Raised when a value is not a 0x-prefixed 40-hex-digit address."""


class InvalidSignature(GatewayError):
    """Raised when a signature is malformed or recovers to the wrong signer."""


class InvalidToken(GatewayError):
    """Raised when a bearer credential fails signature or claim checks."""


class TokenExpired(InvalidToken):
    """Raised when a bearer credential is past its expiry instant."""


class Unauthenticated(GatewayError):
    """Raised when a privileged call carries no acceptable identity."""


class OperatorNotAllowed(GatewayError):
    """Raised when an authenticated address is outside the operator allowlist."""

    def __init__(self, address: str) -> None:
        self.address = address
        super().__init__(f"{address} is not an allowed operator")


class ConfigMissing(GatewayError):
    """Raised when required configuration keys are absent."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Missing required configuration: {', '.join(self.missing)}")


class DeployFailed(GatewayError):
    """The toolkit exited non-zero or reported ``success: false``."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        output_tail: str = "",
        result: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output_tail = output_tail
        self.result = result or {}


class ParseError(GatewayError):
    """The toolkit output did not end in a parseable JSON result."""

    def __init__(self, message: str, *, exit_code: int | None = None, output_tail: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output_tail = output_tail


class ReconcileFailed(GatewayError):
    """The datastore write after a successful deployment failed.

    Non-fatal: callers attach the message to an otherwise successful result.
    """
