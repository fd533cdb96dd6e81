"""Pydantic request/response models for the gateway REST API.

Field names are snake_case in Python and camelCase on the wire; requests
accept either spelling.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from picks_gateway.core.addresses import MAX_ISSUED_AT


class _ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class NonceResponse(_ApiModel):
    """GET /auth-nonce — a challenge to sign with the wallet."""

    address: str
    nonce: str
    issued_at: int = Field(alias="issuedAt")
    expires_at: int = Field(alias="expiresAt")
    message: str = Field(description="Exact text to pass to personal_sign")


class VerifyRequest(_ApiModel):
    """POST /auth-verify — signed challenge."""

    address: str = Field(max_length=64)
    nonce: str = Field(max_length=128)
    signature: str = Field(max_length=256)
    issued_at: int | None = Field(default=None, alias="issuedAt", ge=0, le=MAX_ISSUED_AT)


class VerifyResponse(_ApiModel):
    token: str
    address: str
    expires_at: int = Field(alias="expiresAt")


class _DatastoreOverride(_ApiModel):
    supabase_url: str | None = Field(default=None, alias="supabaseUrl", max_length=512)
    supabase_key: str | None = Field(default=None, alias="supabaseKey", max_length=1024)


class DeployMarketRequest(_DatastoreOverride):
    """POST /api/deploy-market — explicit market parameters.

    Missing timestamps default to a 3-day market with a 30-minute cutoff.
    """

    name_prefix: str = Field(default="Pick", alias="namePrefix", max_length=64)
    fee_bps: float | None = Field(default=None, alias="feeBps")
    asset: str | None = Field(default=None, max_length=64)
    end_time: float | None = Field(default=None, alias="endTime")
    cutoff_time: float | None = Field(default=None, alias="cutoffTime")
    pick_id: str | None = Field(default=None, alias="pickId", max_length=128)


class LaunchMarketRequest(_DatastoreOverride):
    """POST /api/launch-evm-market — deploy the market for an existing pick."""

    pick_id: str = Field(alias="pickId", min_length=1, max_length=128)
    name_prefix: str | None = Field(default=None, alias="namePrefix", max_length=64)
    fee_bps: float | None = Field(default=None, alias="feeBps")
    asset: str | None = Field(default=None, max_length=64)


class DeployResponse(_ApiModel):
    success: bool
    market_address: str | None = Field(default=None, alias="marketAddress")
    yes_share_address: str | None = Field(default=None, alias="yesShareAddress")
    no_share_address: str | None = Field(default=None, alias="noShareAddress")
    fee_bps: int = Field(alias="feeBps")
    asset: str
    name_prefix: str = Field(alias="namePrefix")
    end_time: int = Field(alias="endTime")
    cutoff_time: int = Field(alias="cutoffTime")
    window_source: str = Field(default="request", alias="windowSource")
    pick_id: str | None = Field(default=None, alias="pickId")
    db_update: str = Field(alias="dbUpdate")
    db_error: str | None = Field(default=None, alias="dbError")


class ResolveMarketRequest(_ApiModel):
    market_address: str = Field(alias="marketAddress", max_length=64)
    result: str = Field(max_length=16, description="less, more, void, yes, no, invalid, under or over")


class ClaimMarketRequest(_ApiModel):
    market_address: str = Field(alias="marketAddress", max_length=64)
    wallet: str | None = Field(default=None, max_length=64)


class RefundMarketRequest(_ApiModel):
    """POST /api/refund-market — pay out a wallet by hand."""

    market_address: str = Field(alias="marketAddress", max_length=64)
    wallet: str = Field(max_length=64)
    direct: bool = Field(default=False, description="Send BNB straight to the wallet instead of claimFor")


class ToolkitResponse(_ApiModel):
    """Result of a resolve, claim or refund run, as reported by the toolkit."""

    success: bool
    result: dict[str, Any] = Field(default_factory=dict)


class ReconcileRequest(_DatastoreOverride):
    market_address: str = Field(alias="marketAddress", max_length=64)


class ReconcileResponse(_ApiModel):
    market_address: str = Field(alias="marketAddress")
    db_update: str = Field(alias="dbUpdate")
    db_error: str | None = Field(default=None, alias="dbError")


class HealthResponse(_ApiModel):
    """GET /health"""

    status: str
    version: str
    uptime_seconds: float = 0.0
    toolkit_in_flight: int = 0
    pending_reconciliations: int = 0


class ReadinessResponse(_ApiModel):
    """GET /health/ready — Deep readiness check."""

    ready: bool
    checks: dict[str, bool] = Field(default_factory=dict)
