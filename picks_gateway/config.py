"""Gateway configuration loaded from environment variables."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

# WBNB on BSC mainnet, the toolkit's default escrow asset
DEFAULT_ESCROW_ASSET = "0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_ENV_MARKER_KEYS = ("APP_ENV", "ENVIRONMENT", "NODE_ENV")
_PRODUCTION_VALUES = ("production", "prod")
_NON_PRODUCTION_VALUES = ("development", "dev", "local", "test")
_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


def _int_env(key: str, default: str) -> int:
    val = os.getenv(key, default)
    try:
        return int(val)
    except (ValueError, TypeError, OverflowError):
        raise ValueError(f"Invalid integer for {key}: {val!r}")


def _float_env(key: str, default: str) -> float:
    val = os.getenv(key, default)
    try:
        return float(val)
    except (ValueError, TypeError, OverflowError):
        raise ValueError(f"Invalid float for {key}: {val!r}")


def _markers(env: Mapping[str, str]) -> list[str]:
    return [env.get(k, "").strip().lower() for k in _ENV_MARKER_KEYS]


def has_production_marker(env: Mapping[str, str]) -> bool:
    if any(m in _PRODUCTION_VALUES for m in _markers(env)):
        return True
    return env.get("RAILWAY_ENVIRONMENT_NAME", "").strip().lower() == "production"


def has_dev_platform_marker(env: Mapping[str, str]) -> bool:
    return bool(env.get("REPL_ID")) or env.get("CODESPACES", "").strip().lower() == "true"


def has_non_production_marker(env: Mapping[str, str]) -> bool:
    return any(m in _NON_PRODUCTION_VALUES for m in _markers(env))


def is_development(env: Mapping[str, str]) -> bool:
    """True only for explicit local/dev contexts with no production marker."""
    if has_production_marker(env):
        return False
    return has_dev_platform_marker(env) or has_non_production_marker(env)


def dev_fallback_policy(env: Mapping[str, str]) -> bool:
    """Decide whether unsigned address headers may authenticate callers.

    Precedence: explicit ALLOW_DEV_AUTH_FALLBACK override, then a production
    marker (disabled), then a dev-platform marker (enabled), then a generic
    non-production marker (enabled). Anything else is disabled.
    """
    override = env.get("ALLOW_DEV_AUTH_FALLBACK", "").strip().lower()
    if override in _TRUE_VALUES:
        return True
    if override in _FALSE_VALUES:
        return False
    if has_production_marker(env):
        return False
    if has_dev_platform_marker(env):
        return True
    if has_non_production_marker(env):
        return True
    return False


@dataclass(frozen=True)
class Config:
    # Deployment toolkit (Hardhat project)
    ankr_api_key: str = os.getenv("ANKR_API_KEY", "")
    bsc_rpc_url: str = os.getenv("BSC_RPC_URL", "")
    deployer_pk: str = os.getenv("DEPLOYER_PK", "")
    escrow_asset: str = os.getenv("ESCROW_ASSET", DEFAULT_ESCROW_ASSET)
    fee_bps: int = _int_env("FEE_BPS", "300")
    toolkit_dir: str = os.getenv("DEPLOY_TOOLKIT_DIR", ".")
    deploy_timeout: float = _float_env("DEPLOY_TIMEOUT", "600")
    deploy_output_limit: int = _int_env("DEPLOY_OUTPUT_LIMIT", "65536")

    # Authentication
    admin_pin: str = os.getenv("ADMIN_PIN", "")
    admin_path: str = os.getenv("ADMIN_PATH", "ops")
    auth_secret: str = os.getenv("AUTH_SECRET", "")
    operator_addresses_raw: str = os.getenv("OPERATOR_ADDRESSES", "")
    nonce_ttl: int = _int_env("NONCE_TTL", "300")
    dev_auth_fallback: bool = dev_fallback_policy(os.environ)
    development: bool = is_development(os.environ)
    production: bool = has_production_marker(os.environ)

    # Datastore (Supabase REST)
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_key: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
    supabase_table: str = os.getenv("SUPABASE_TABLE", "picks")

    # Gateway API
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = _int_env("API_PORT", "3000")

    # Timeouts (seconds)
    http_timeout: int = _int_env("HTTP_TIMEOUT", "15")

    # Rate limits
    rate_limit_capacity: int = _int_env("RATE_LIMIT_CAPACITY", "30")
    rate_limit_rate: int = _int_env("RATE_LIMIT_RATE", "5")
    # Guesses per client at /auth-verify and the admin login
    auth_rate_limit_capacity: int = _int_env("AUTH_RATE_LIMIT_CAPACITY", "5")
    auth_rate_limit_per_minute: int = _int_env("AUTH_RATE_LIMIT_PER_MINUTE", "5")

    @property
    def rpc_source(self) -> str:
        """The toolkit's RPC source: an Ankr key or an explicit URL."""
        return self.ankr_api_key or self.bsc_rpc_url

    @property
    def operator_addresses(self) -> frozenset[str]:
        """Lowercased allowlist; empty means any authenticated wallet."""
        return frozenset(
            a.strip().lower() for a in self.operator_addresses_raw.split(",") if a.strip()
        )

    @property
    def datastore_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def validate(self, *, strict: bool = False) -> list[str]:
        """Validate config at startup. Returns list of warnings (empty = all good).

        Hard errors (malformed values, unsafe production settings) always
        raise ValueError. With strict=True any warning raises as well.
        """
        warnings: list[str] = []
        if self.api_port < 1 or self.api_port > 65535:
            raise ValueError(f"API_PORT must be 1-65535, got {self.api_port}")
        if not (0 <= self.fee_bps <= 10_000):
            raise ValueError(f"FEE_BPS must be 0-10000, got {self.fee_bps}")
        if self.escrow_asset and not _ADDRESS_RE.match(self.escrow_asset):
            raise ValueError(f"ESCROW_ASSET is not a valid address: {self.escrow_asset!r}")
        for addr in self.operator_addresses:
            if not _ADDRESS_RE.match(addr):
                raise ValueError(f"OPERATOR_ADDRESSES contains an invalid address: {addr!r}")
        if not re.match(r"^[A-Za-z0-9_-]+$", self.admin_path):
            raise ValueError(f"ADMIN_PATH must be a single URL-safe path segment, got {self.admin_path!r}")
        if self.deploy_timeout <= 0:
            raise ValueError(f"DEPLOY_TIMEOUT must be > 0, got {self.deploy_timeout}")
        if self.deploy_output_limit < 4096:
            raise ValueError(f"DEPLOY_OUTPUT_LIMIT must be >= 4096, got {self.deploy_output_limit}")
        if self.nonce_ttl < 30:
            raise ValueError(f"NONCE_TTL must be >= 30, got {self.nonce_ttl}")
        if self.http_timeout < 1:
            raise ValueError(f"HTTP_TIMEOUT must be >= 1, got {self.http_timeout}")
        if self.rate_limit_capacity < 1:
            raise ValueError(f"RATE_LIMIT_CAPACITY must be >= 1, got {self.rate_limit_capacity}")
        if self.rate_limit_rate < 1:
            raise ValueError(f"RATE_LIMIT_RATE must be >= 1, got {self.rate_limit_rate}")
        if self.auth_rate_limit_capacity < 1:
            raise ValueError(f"AUTH_RATE_LIMIT_CAPACITY must be >= 1, got {self.auth_rate_limit_capacity}")
        if self.auth_rate_limit_per_minute < 1:
            raise ValueError(f"AUTH_RATE_LIMIT_PER_MINUTE must be >= 1, got {self.auth_rate_limit_per_minute}")

        if not self.auth_secret:
            if self.production:
                raise ValueError("AUTH_SECRET must be set in production")
            warnings.append("AUTH_SECRET not set — bearer tokens signed with a fallback secret")
        if not self.admin_pin:
            warnings.append("ADMIN_PIN not set — admin console disabled")
        if not self.rpc_source:
            warnings.append("ANKR_API_KEY / BSC_RPC_URL not set — deployments will fail")
        if not self.deployer_pk:
            warnings.append("DEPLOYER_PK not set — deployments will fail")
        elif not re.match(r"^(0x)?[0-9a-fA-F]{64}$", self.deployer_pk):
            raise ValueError("DEPLOYER_PK must be a 32-byte hex string (with optional 0x prefix)")
        if not self.datastore_configured:
            warnings.append("SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY not set — results will not be reconciled")
        if self.dev_auth_fallback:
            if self.production:
                warnings.append("ALLOW_DEV_AUTH_FALLBACK forced on in production — any caller can claim any address")
            else:
                warnings.append("dev auth fallback enabled — unsigned address headers are accepted")

        if strict and warnings:
            raise ValueError("Config validation failed in strict mode:\n" + "\n".join(f"  - {w}" for w in warnings))
        return warnings
