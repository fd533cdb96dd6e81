"""Persist deployment results into the picks table (Supabase REST).

Deployment and bookkeeping are separate failure domains: a failed write is
reported as ``dbUpdate: "failed"`` on an otherwise successful deployment and
parked so it can be retried later by market address, without redeploying.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from picks_gateway.core.errors import ReconcileFailed

if TYPE_CHECKING:
    from picks_gateway.core.orchestrator import DeployParams, DeployResult

log = structlog.get_logger()

DEFAULT_MARKET_DURATION = 3 * 24 * 3600
CUTOFF_BEFORE_END = 30 * 60
MIN_CUTOFF_LEAD = 5 * 60
# Expiries past 9999-12-31 are treated as unusable
MAX_EXPIRY = 253_402_300_799


@dataclass(frozen=True)
class DatastoreCredentials:
    url: str
    key: str

    @property
    def usable(self) -> bool:
        return bool(self.url and self.key)


@dataclass(frozen=True)
class DeployWindow:
    end_time: int
    cutoff_time: int
    source: str  # "record" or "default"


@dataclass(frozen=True)
class ReconcileOutcome:
    db_update: str  # ok, skipped, failed
    db_error: str | None = None


def default_window(now: int) -> DeployWindow:
    end = now + DEFAULT_MARKET_DURATION
    return DeployWindow(end_time=end, cutoff_time=end - CUTOFF_BEFORE_END, source="default")


def _parse_expiry(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            ts = float(value)
        except OverflowError:
            return None
        # Millisecond timestamps show up from JS clients
        if ts > 1e12:
            ts /= 1000
        if not math.isfinite(ts) or not 0 < ts <= MAX_EXPIRY:
            return None
        return int(ts)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.replace(".", "", 1).isdigit():
            return _parse_expiry(float(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return _parse_expiry(parsed.timestamp())
        except (ValueError, OverflowError):
            return None
    return None


def derive_window(record: dict[str, Any] | None, now: int) -> DeployWindow:
    """Compute end/cutoff timestamps from a pick record.

    Uses ``expires_at`` (ISO 8601 or unix seconds) or ``duration_hours``.
    The cutoff sits 30 minutes before the end but never less than 5 minutes
    from now; when both cannot hold, the end moves out.
    """
    if not record:
        return default_window(now)

    end = _parse_expiry(record.get("expires_at"))
    if end is None:
        duration = record.get("duration_hours")
        try:
            hours = float(duration) if duration is not None else 0.0
        except (TypeError, ValueError):
            hours = 0.0
        if math.isfinite(hours) and 0 < hours * 3600 <= MAX_EXPIRY - now:
            end = now + int(hours * 3600)
    if end is None:
        return default_window(now)

    cutoff = max(end - CUTOFF_BEFORE_END, now + MIN_CUTOFF_LEAD)
    end = max(end, cutoff + CUTOFF_BEFORE_END)
    return DeployWindow(end_time=end, cutoff_time=cutoff, source="record")


def result_fields(result: DeployResult, params: DeployParams) -> dict[str, Any]:
    """Columns written back to the pick row after a deployment."""
    data = result.data
    return {
        "evm_market_address": result.market_address,
        "evm_yes_share_address": _lower(data.get("yesShareAddress")),
        "evm_no_share_address": _lower(data.get("noShareAddress")),
        "evm_fee_bps": _as_int(data.get("feeBps"), params.fee_bps),
        "evm_asset": params.asset,
        "evm_end_time": _as_int(data.get("endTime"), params.end_time),
        "evm_cutoff_time": _as_int(data.get("cutoffTime"), params.cutoff_time),
        "evm_deployed_at": datetime.now(timezone.utc).isoformat(),
    }


def _lower(value: Any) -> str | None:
    return value.lower() if isinstance(value, str) and value else None


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class _PendingWrite:
    record_id: str
    fields: dict[str, Any]
    error: str


class Reconciler:
    """Reads pick records and writes deployment results back."""

    _MAX_PENDING = 1000

    def __init__(
        self,
        credentials: DatastoreCredentials | None = None,
        table: str = "picks",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credentials = credentials or DatastoreCredentials(url="", key="")
        self._table = table
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self._clock = clock
        # market address -> record id for writes that already succeeded
        self._completed: dict[str, str] = {}
        self._pending: dict[str, _PendingWrite] = {}

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    def credentials_for(self, override: DatastoreCredentials | None = None) -> DatastoreCredentials | None:
        if override is not None and override.usable:
            return override
        if self._credentials.usable:
            return self._credentials
        return None

    @property
    def configured(self) -> bool:
        return self._credentials.usable

    @property
    def pending(self) -> dict[str, str]:
        """Market address -> last write error for parked reconciliations."""
        return {market: p.error for market, p in self._pending.items()}

    def _endpoint(self, creds: DatastoreCredentials) -> str:
        return f"{creds.url.rstrip('/')}/rest/v1/{self._table}"

    @staticmethod
    def _headers(creds: DatastoreCredentials) -> dict[str, str]:
        return {
            "apikey": creds.key,
            "Authorization": f"Bearer {creds.key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    async def fetch_record(
        self,
        record_id: str,
        credentials: DatastoreCredentials | None = None,
    ) -> dict[str, Any] | None:
        """Fetch one pick row by id. Raises httpx errors to the caller."""
        creds = self.credentials_for(credentials)
        if creds is None:
            return None
        resp = await self._client.get(
            self._endpoint(creds),
            params={"id": f"eq.{record_id}", "select": "*"},
            headers=self._headers(creds),
        )
        resp.raise_for_status()
        rows = resp.json()
        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            return rows[0]
        return None

    async def derive_deploy_window(
        self,
        record_id: str | None,
        credentials: DatastoreCredentials | None = None,
    ) -> tuple[DeployWindow, dict[str, Any] | None]:
        """Window for a launch; record read failures fall back to defaults."""
        now = int(self._clock())
        if not record_id:
            return default_window(now), None
        try:
            record = await self.fetch_record(record_id, credentials)
        except (httpx.HTTPError, ValueError) as e:
            log.warning("pick_record_read_failed", record_id=record_id, error=str(e))
            return default_window(now), None
        if record is None:
            log.info("pick_record_not_found", record_id=record_id)
        return derive_window(record, now), record

    async def reconcile(
        self,
        record_id: str | None,
        result: DeployResult,
        params: DeployParams,
        credentials: DatastoreCredentials | None = None,
    ) -> ReconcileOutcome:
        """Write a successful deployment's addresses to the pick row."""
        if not result.success:
            raise ValueError("reconcile called for a failed deployment")
        creds = self.credentials_for(credentials)
        if not record_id or creds is None:
            log.info(
                "reconcile_skipped",
                record_id=record_id,
                reason="no_record_id" if not record_id else "no_credentials",
            )
            return ReconcileOutcome(db_update="skipped")

        market = result.market_address
        if market and self._completed.get(market) == record_id:
            log.info("reconcile_already_done", market=market, record_id=record_id)
            return ReconcileOutcome(db_update="ok")

        fields = result_fields(result, params)
        return await self._apply(market, record_id, fields, creds)

    async def retry(
        self,
        market_address: str,
        credentials: DatastoreCredentials | None = None,
    ) -> ReconcileOutcome | None:
        """Re-attempt a parked write. None if nothing is pending for the market."""
        market = market_address.lower()
        if market in self._completed:
            return ReconcileOutcome(db_update="ok")
        pending = self._pending.get(market)
        if pending is None:
            return None
        creds = self.credentials_for(credentials)
        if creds is None:
            return ReconcileOutcome(db_update="skipped")
        return await self._apply(market, pending.record_id, pending.fields, creds)

    async def _apply(
        self,
        market: str | None,
        record_id: str,
        fields: dict[str, Any],
        creds: DatastoreCredentials,
    ) -> ReconcileOutcome:
        try:
            await self._write(record_id, fields, creds)
        except ReconcileFailed as e:
            log.error("reconcile_failed", record_id=record_id, market=market, error=str(e))
            if market:
                self._park(market, _PendingWrite(record_id=record_id, fields=fields, error=str(e)))
            return ReconcileOutcome(db_update="failed", db_error=str(e))

        if market:
            self._pending.pop(market, None)
            self._completed[market] = record_id
        log.info("reconcile_ok", record_id=record_id, market=market)
        return ReconcileOutcome(db_update="ok")

    async def _write(self, record_id: str, fields: dict[str, Any], creds: DatastoreCredentials) -> None:
        try:
            resp = await self._client.patch(
                self._endpoint(creds),
                params={"id": f"eq.{record_id}"},
                json=fields,
                headers=self._headers(creds),
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ReconcileFailed(f"datastore returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ReconcileFailed(f"datastore request failed: {e}") from e

        try:
            rows = resp.json()
        except ValueError:
            rows = None
        if isinstance(rows, list) and not rows:
            raise ReconcileFailed(f"no pick row with id {record_id}")

    def _park(self, market: str, pending: _PendingWrite) -> None:
        if market not in self._pending and len(self._pending) >= self._MAX_PENDING:
            oldest = next(iter(self._pending))
            del self._pending[oldest]
            log.warning("reconcile_pending_evicted", market=oldest)
        self._pending[market] = pending
