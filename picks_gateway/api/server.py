"""FastAPI server for the picks gateway."""

from __future__ import annotations

import html
import os
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import Depends, FastAPI, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from starlette.responses import JSONResponse

from picks_gateway.api.auth import WalletAuthenticator, admin_session_id, is_admin
from picks_gateway.api.metrics import (
    AUTH_ATTEMPTS,
    NONCES_ISSUED,
    RECONCILE_RESULTS,
    TOOLKIT_DURATION,
    TOOLKIT_IN_FLIGHT,
    TOOLKIT_RUNS,
    metrics_response,
)
from picks_gateway.api.middleware import RateLimiter, RateLimitMiddleware, RequestIdMiddleware
from picks_gateway.api.models import (
    ClaimMarketRequest,
    DeployMarketRequest,
    DeployResponse,
    HealthResponse,
    LaunchMarketRequest,
    NonceResponse,
    ReadinessResponse,
    ReconcileRequest,
    ReconcileResponse,
    RefundMarketRequest,
    ResolveMarketRequest,
    ToolkitResponse,
    VerifyRequest,
    VerifyResponse,
)
from picks_gateway.core.addresses import build_challenge_message, normalize_address, verify_challenge_signature
from picks_gateway.core.errors import ConfigMissing, DeployFailed, InvalidAddress, InvalidSignature, ParseError
from picks_gateway.core.orchestrator import (
    CLAIM_SCRIPT,
    DEPLOY_SCRIPT,
    REFUND_SCRIPT,
    RESOLVE_SCRIPT,
    DeployParams,
    DeployResult,
    RecordLocks,
    claim_overrides,
    refund_overrides,
    resolve_overrides,
)
from picks_gateway.core.reconciler import (
    CUTOFF_BEFORE_END,
    DatastoreCredentials,
    default_window,
    result_fields,
)
from picks_gateway.core.session import SESSION_COOKIE

if TYPE_CHECKING:
    from picks_gateway.config import Config
    from picks_gateway.core.credentials import CredentialIssuer
    from picks_gateway.core.nonces import NonceStore
    from picks_gateway.core.orchestrator import DeploymentOrchestrator
    from picks_gateway.core.reconciler import Reconciler
    from picks_gateway.core.session import SessionGate

log = structlog.get_logger()

_AUTH_FAILED = "Authentication failed"


@dataclass
class _Outcome:
    """HTTP status plus JSON body, shared by the JSON API and the console."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    def json(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.body)


def _datastore_override(url: str | None, key: str | None) -> DatastoreCredentials | None:
    if url and key:
        return DatastoreCredentials(url=url, key=key)
    return None


def _record_prefix(record: dict[str, Any] | None) -> str | None:
    """Market name prefix from a pick row's title, if it has one."""
    if not record:
        return None
    title = record.get("title") or record.get("name")
    if not isinstance(title, str):
        return None
    first_line = title.strip().splitlines()[0] if title.strip() else ""
    return first_line[:64].strip() or None


def _failure_body(exc: DeployFailed | ParseError) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": False,
        "detail": str(exc),
        "errorType": type(exc).__name__,
        "exitCode": exc.exit_code,
        "output": exc.output_tail,
    }
    if isinstance(exc, DeployFailed) and exc.result:
        body["result"] = exc.result
    return body


# ---------------------------------------------------------------------------
# Admin console pages
# ---------------------------------------------------------------------------


def _page(title: str, body: str) -> str:
    return (
        "<!doctype html><html><head><meta charset=\"utf-8\">"
        f"<title>{html.escape(title)}</title></head>"
        f"<body><h1>{html.escape(title)}</h1>{body}</body></html>"
    )


def _login_page(action: str, error: str = "") -> str:
    notice = f"<p role=\"alert\">{html.escape(error)}</p>" if error else ""
    return _page(
        "Operations login",
        f"{notice}<form method=\"post\" action=\"{html.escape(action)}\">"
        "<label>PIN <input type=\"password\" name=\"pin\" autocomplete=\"off\" required></label>"
        "<button type=\"submit\">Sign in</button></form>",
    )


def _launch_page(action: str, logout: str, default_fee: int, result: str = "") -> str:
    return _page(
        "Launch market",
        f"{result}<form method=\"post\" action=\"{html.escape(action)}\">"
        "<label>Pick ID <input name=\"pick_id\"></label> "
        "<label>Name prefix <input name=\"name_prefix\" maxlength=\"64\"></label> "
        f"<label>Fee (bps) <input name=\"fee_bps\" value=\"{default_fee}\"></label> "
        "<button type=\"submit\">Deploy</button></form>"
        f"<form method=\"post\" action=\"{html.escape(logout)}\"><button type=\"submit\">Log out</button></form>",
    )


def _outcome_fragment(outcome: _Outcome) -> str:
    rows = "".join(
        f"<tr><th>{html.escape(str(k))}</th><td><pre>{html.escape(str(v))}</pre></td></tr>"
        for k, v in outcome.body.items()
        if v is not None
    )
    heading = "Deployed" if outcome.status_code == 200 else f"Failed ({outcome.status_code})"
    return f"<h2>{heading}</h2><table>{rows}</table>"


def _admin_unconfigured() -> HTMLResponse:
    log.error("admin_console_unconfigured")
    return HTMLResponse(
        _page("Admin console unavailable", "<p>ADMIN_PIN is not configured.</p>"),
        status_code=500,
    )


def create_app(
    config: Config,
    nonce_store: NonceStore,
    issuer: CredentialIssuer,
    session_gate: SessionGate,
    orchestrator: DeploymentOrchestrator,
    reconciler: Reconciler,
    rate_limit_capacity: int = 30,
    rate_limit_rate: float = 5,
    auth_rate_limit_capacity: int = 5,
    auth_rate_limit_rate: float = 5 / 60,
) -> FastAPI:
    """Build the FastAPI application with all routes wired."""

    from picks_gateway import __version__

    app = FastAPI(title="Picks Gateway", version=__version__)
    started = time.monotonic()
    record_locks = RecordLocks()
    in_flight = {"runs": 0}
    wallet_auth = WalletAuthenticator(
        issuer,
        dev_fallback=config.dev_auth_fallback,
        allowed_addresses=config.operator_addresses,
    )
    admin_prefix = f"/mein/{config.admin_path}"

    # Catch unhandled exceptions — never leak stack traces to clients
    @app.exception_handler(Exception)
    async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "unhandled_exception",
            error=str(exc),
            path=request.url.path,
            method=request.method,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    _BODY_LIMIT = 1_048_576  # 1 MB

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Enforce 1 MB body limit on both Content-Length header and actual body."""
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                if int(content_length) > _BODY_LIMIT:
                    return JSONResponse(status_code=413, content={"detail": "Request body too large (max 1MB)"})
            except (ValueError, OverflowError):
                return JSONResponse(status_code=400, content={"detail": "Invalid Content-Length header"})
        elif request.method in ("POST", "PUT", "PATCH"):
            body = await request.body()
            if len(body) > _BODY_LIMIT:
                return JSONResponse(status_code=413, content={"detail": "Request body too large (max 1MB)"})
        return await call_next(request)

    app.add_middleware(
        RateLimitMiddleware,
        limiter=RateLimiter(capacity=rate_limit_capacity, rate=rate_limit_rate),
        credential_limiter=RateLimiter(capacity=auth_rate_limit_capacity, rate=auth_rate_limit_rate),
        credential_paths=("/auth-verify", f"{admin_prefix}/login"),
    )

    # Request ID tracing (outermost — must be added last)
    app.add_middleware(RequestIdMiddleware, redact_prefix=admin_prefix)

    # -----------------------------------------------------------------------
    # Toolkit runs
    # -----------------------------------------------------------------------

    async def run_toolkit(script: str, overrides: dict[str, str]) -> DeployResult:
        """Run one script with metrics; ConfigMissing propagates."""
        TOOLKIT_IN_FLIGHT.inc()
        in_flight["runs"] += 1
        try:
            result = await orchestrator.run(script, overrides)
        except ConfigMissing:
            TOOLKIT_RUNS.labels(script=script, result="config_missing").inc()
            raise
        finally:
            TOOLKIT_IN_FLIGHT.dec()
            in_flight["runs"] -= 1
        TOOLKIT_DURATION.labels(script=script).observe(result.duration_s)
        label = "success" if result.success else ("parse_error" if result.error_type == "ParseError" else "deploy_failed")
        TOOLKIT_RUNS.labels(script=script, result=label).inc()
        return result

    async def execute_deploy(
        params: DeployParams,
        credentials: DatastoreCredentials | None,
        window_source: str,
    ) -> _Outcome:
        try:
            result = await run_toolkit(DEPLOY_SCRIPT, params.env_overrides())
        except ConfigMissing as e:
            return _Outcome(500, {"detail": "Deployment toolkit is not configured", "missing": e.missing})
        try:
            result.raise_for_status()
        except (DeployFailed, ParseError) as e:
            log.error("deploy_failed", error=str(e), error_type=type(e).__name__, pick_id=params.record_id)
            return _Outcome(502, _failure_body(e))

        outcome = await reconciler.reconcile(params.record_id, result, params, credentials)
        RECONCILE_RESULTS.labels(result=outcome.db_update).inc()

        fields = result_fields(result, params)
        response = DeployResponse(
            success=True,
            market_address=result.market_address,
            yes_share_address=fields["evm_yes_share_address"],
            no_share_address=fields["evm_no_share_address"],
            fee_bps=fields["evm_fee_bps"],
            asset=params.asset,
            name_prefix=params.name_prefix,
            end_time=fields["evm_end_time"],
            cutoff_time=fields["evm_cutoff_time"],
            window_source=window_source,
            pick_id=params.record_id,
            db_update=outcome.db_update,
            db_error=outcome.db_error,
        )
        log.info(
            "market_deployed",
            market=result.market_address,
            pick_id=params.record_id,
            db_update=outcome.db_update,
        )
        return _Outcome(200, response.model_dump(by_alias=True, exclude_none=True))

    async def launch_for_record(
        pick_id: str,
        *,
        name_prefix: str | None,
        fee_bps: float | None,
        asset: str | None,
        credentials: DatastoreCredentials | None,
    ) -> _Outcome:
        if not record_locks.acquire(pick_id):
            log.warning("launch_in_progress", pick_id=pick_id)
            return _Outcome(409, {"detail": "A deployment for this pick is already running"})
        try:
            window, record = await reconciler.derive_deploy_window(pick_id, credentials)
            try:
                params = DeployParams.build(
                    name_prefix=name_prefix or _record_prefix(record) or "Pick",
                    fee_bps=config.fee_bps if fee_bps is None else fee_bps,
                    asset=asset or config.escrow_asset,
                    end_time=window.end_time,
                    cutoff_time=window.cutoff_time,
                    record_id=pick_id,
                )
            except ValueError as e:
                return _Outcome(400, {"detail": str(e)})
            return await execute_deploy(params, credentials, window.source)
        finally:
            record_locks.release(pick_id)

    # -----------------------------------------------------------------------
    # Wallet authentication
    # -----------------------------------------------------------------------

    @app.get("/auth-nonce", response_model=NonceResponse)
    async def auth_nonce(address: str = "") -> NonceResponse | JSONResponse:
        """Issue a single-use challenge for a wallet address."""
        try:
            issued = nonce_store.issue(address)
        except InvalidAddress:
            return JSONResponse(status_code=400, content={"detail": "Invalid address"})
        NONCES_ISSUED.inc()
        return NonceResponse(
            address=issued.address,
            nonce=issued.nonce,
            issued_at=issued.issued_at,
            expires_at=issued.expires_at,
            message=build_challenge_message(issued.address, issued.nonce, issued.issued_at),
        )

    @app.post("/auth-verify", response_model=VerifyResponse)
    async def auth_verify(request: VerifyRequest) -> VerifyResponse | JSONResponse:
        """Exchange a signed challenge for a bearer credential.

        The signature is checked before the nonce is consumed, so a forged
        request cannot burn a legitimate client's outstanding challenge.
        """
        try:
            address = normalize_address(request.address)
        except InvalidAddress:
            return JSONResponse(status_code=400, content={"detail": "Invalid address"})
        if not request.nonce or not request.signature:
            return JSONResponse(status_code=400, content={"detail": "nonce and signature are required"})

        try:
            verify_challenge_signature(address, request.nonce, request.signature, request.issued_at)
        except InvalidSignature:
            AUTH_ATTEMPTS.labels(method="wallet", result="bad_signature").inc()
            log.info("auth_verify_rejected", address=address, reason="signature")
            return JSONResponse(status_code=401, content={"detail": _AUTH_FAILED})

        if not nonce_store.consume(address, request.nonce):
            AUTH_ATTEMPTS.labels(method="wallet", result="bad_nonce").inc()
            log.info("auth_verify_rejected", address=address, reason="nonce")
            return JSONResponse(status_code=401, content={"detail": _AUTH_FAILED})

        credential = issuer.issue(address)
        AUTH_ATTEMPTS.labels(method="wallet", result="issued").inc()
        return VerifyResponse(
            token=credential.token,
            address=credential.address,
            expires_at=credential.expires_at,
        )

    # -----------------------------------------------------------------------
    # Admin console
    # -----------------------------------------------------------------------

    def _set_session_cookie(response: Response, session_id: str) -> None:
        response.set_cookie(
            SESSION_COOKIE,
            session_id,
            max_age=session_gate.max_age,
            path=admin_prefix,
            secure=True,
            httponly=True,
            samesite="strict",
        )

    @app.get(f"{admin_prefix}/login", response_class=HTMLResponse)
    async def admin_login_form(request: Request) -> Response:
        if not session_gate.configured:
            return _admin_unconfigured()
        if is_admin(request, session_gate):
            return RedirectResponse(f"{admin_prefix}/launch", status_code=303)
        return HTMLResponse(_login_page(f"{admin_prefix}/login"))

    @app.post(f"{admin_prefix}/login", response_class=HTMLResponse)
    async def admin_login(pin: str = Form("")) -> Response:
        if not session_gate.configured:
            return _admin_unconfigured()
        session_id = session_gate.login(pin)
        if session_id is None:
            AUTH_ATTEMPTS.labels(method="admin", result="rejected").inc()
            return HTMLResponse(_login_page(f"{admin_prefix}/login", error="Invalid PIN"), status_code=401)
        AUTH_ATTEMPTS.labels(method="admin", result="ok").inc()
        response = RedirectResponse(f"{admin_prefix}/launch", status_code=303)
        _set_session_cookie(response, session_id)
        return response

    @app.post(f"{admin_prefix}/logout")
    async def admin_logout(request: Request) -> Response:
        if not session_gate.configured:
            return _admin_unconfigured()
        session_gate.logout(admin_session_id(request))
        response = RedirectResponse(f"{admin_prefix}/login", status_code=303)
        response.delete_cookie(
            SESSION_COOKIE,
            path=admin_prefix,
            secure=True,
            httponly=True,
            samesite="strict",
        )
        return response

    @app.get(f"{admin_prefix}/launch", response_class=HTMLResponse)
    async def admin_launch_form(request: Request) -> Response:
        if not session_gate.configured:
            return _admin_unconfigured()
        if not is_admin(request, session_gate):
            return RedirectResponse(f"{admin_prefix}/login", status_code=303)
        return HTMLResponse(_launch_page(f"{admin_prefix}/launch", f"{admin_prefix}/logout", config.fee_bps))

    @app.post(f"{admin_prefix}/launch", response_class=HTMLResponse)
    async def admin_launch(
        request: Request,
        pick_id: str = Form(""),
        name_prefix: str = Form(""),
        fee_bps: str = Form(""),
    ) -> Response:
        if not session_gate.configured:
            return _admin_unconfigured()
        if not is_admin(request, session_gate):
            return RedirectResponse(f"{admin_prefix}/login", status_code=303)

        def render(outcome: _Outcome) -> HTMLResponse:
            page = _launch_page(
                f"{admin_prefix}/launch",
                f"{admin_prefix}/logout",
                config.fee_bps,
                result=_outcome_fragment(outcome),
            )
            return HTMLResponse(page, status_code=outcome.status_code)

        fee: float | None = None
        if fee_bps.strip():
            try:
                fee = float(fee_bps)
            except ValueError:
                return render(_Outcome(400, {"detail": "fee_bps must be a number"}))

        pick = pick_id.strip()
        log.info("admin_launch", pick_id=pick or None)
        if pick:
            outcome = await launch_for_record(
                pick,
                name_prefix=name_prefix.strip() or None,
                fee_bps=fee,
                asset=None,
                credentials=None,
            )
            return render(outcome)

        window = default_window(int(time.time()))
        try:
            params = DeployParams.build(
                name_prefix=name_prefix.strip() or "Pick",
                fee_bps=config.fee_bps if fee is None else fee,
                asset=config.escrow_asset,
                end_time=window.end_time,
                cutoff_time=window.cutoff_time,
            )
        except ValueError as e:
            return render(_Outcome(400, {"detail": str(e)}))
        return render(await execute_deploy(params, None, window.source))

    # -----------------------------------------------------------------------
    # Deployment API
    # -----------------------------------------------------------------------

    @app.post("/api/deploy-market", response_model=DeployResponse)
    async def deploy_market(
        request: DeployMarketRequest,
        operator: str = Depends(wallet_auth),
    ) -> JSONResponse:
        """Deploy a market with explicit parameters."""
        credentials = _datastore_override(request.supabase_url, request.supabase_key)
        source = "request"
        if request.end_time is None:
            window = default_window(int(time.time()))
            end_time: float = window.end_time
            source = window.source
        else:
            end_time = request.end_time
        if request.cutoff_time is None:
            cutoff_time: float = end_time - CUTOFF_BEFORE_END
        else:
            cutoff_time = request.cutoff_time

        try:
            params = DeployParams.build(
                name_prefix=request.name_prefix,
                fee_bps=config.fee_bps if request.fee_bps is None else request.fee_bps,
                asset=request.asset or config.escrow_asset,
                end_time=end_time,
                cutoff_time=cutoff_time,
                record_id=request.pick_id,
            )
        except ValueError as e:
            return JSONResponse(status_code=400, content={"detail": str(e)})

        log.info("deploy_market_requested", operator=operator, pick_id=params.record_id)
        if params.record_id is None:
            return (await execute_deploy(params, credentials, source)).json()

        if not record_locks.acquire(params.record_id):
            return JSONResponse(status_code=409, content={"detail": "A deployment for this pick is already running"})
        try:
            return (await execute_deploy(params, credentials, source)).json()
        finally:
            record_locks.release(params.record_id)

    @app.post("/api/launch-evm-market", response_model=DeployResponse)
    async def launch_evm_market(
        request: LaunchMarketRequest,
        operator: str = Depends(wallet_auth),
    ) -> JSONResponse:
        """Deploy the market for a pick, timing it from the pick's expiry."""
        pick_id = request.pick_id.strip()
        if not pick_id:
            return JSONResponse(status_code=400, content={"detail": "pickId is required"})
        log.info("launch_requested", operator=operator, pick_id=pick_id)
        outcome = await launch_for_record(
            pick_id,
            name_prefix=request.name_prefix,
            fee_bps=request.fee_bps,
            asset=request.asset,
            credentials=_datastore_override(request.supabase_url, request.supabase_key),
        )
        return outcome.json()

    @app.post("/api/resolve-market", response_model=ToolkitResponse)
    async def resolve_market(
        request: ResolveMarketRequest,
        operator: str = Depends(wallet_auth),
    ) -> ToolkitResponse | JSONResponse:
        """Settle a deployed market with the given result."""
        try:
            overrides = resolve_overrides(request.market_address, request.result)
        except (ValueError, InvalidAddress) as e:
            return JSONResponse(status_code=400, content={"detail": str(e)})
        log.info("resolve_requested", operator=operator, market=overrides["MARKET_ADDRESS"])
        return await _run_market_script(RESOLVE_SCRIPT, overrides)

    @app.post("/api/claim-market", response_model=ToolkitResponse)
    async def claim_market(
        request: ClaimMarketRequest,
        operator: str = Depends(wallet_auth),
    ) -> ToolkitResponse | JSONResponse:
        """Claim winnings or refunds from a settled market."""
        try:
            overrides = claim_overrides(request.market_address, request.wallet)
        except InvalidAddress as e:
            return JSONResponse(status_code=400, content={"detail": str(e)})
        log.info("claim_requested", operator=operator, market=overrides["MARKET_ADDRESS"])
        return await _run_market_script(CLAIM_SCRIPT, overrides)

    @app.post("/api/refund-market", response_model=ToolkitResponse)
    async def refund_market(
        request: RefundMarketRequest,
        operator: str = Depends(wallet_auth),
    ) -> ToolkitResponse | JSONResponse:
        """Pay a wallet its settled share when claimFor cannot be used."""
        try:
            overrides = refund_overrides(request.market_address, request.wallet, request.direct)
        except InvalidAddress as e:
            return JSONResponse(status_code=400, content={"detail": str(e)})
        log.warning(
            "refund_requested",
            operator=operator,
            market=overrides["MARKET_ADDRESS"],
            wallet=overrides["CLAIM_WALLET"],
            direct=request.direct,
        )
        return await _run_market_script(REFUND_SCRIPT, overrides)

    async def _run_market_script(script: str, overrides: dict[str, str]) -> ToolkitResponse | JSONResponse:
        try:
            result = await run_toolkit(script, overrides)
        except ConfigMissing as e:
            return JSONResponse(
                status_code=500,
                content={"detail": "Deployment toolkit is not configured", "missing": e.missing},
            )
        try:
            result.raise_for_status()
        except (DeployFailed, ParseError) as e:
            log.error("toolkit_script_failed", script=script, error=str(e))
            return JSONResponse(status_code=502, content=_failure_body(e))
        return ToolkitResponse(success=True, result=result.data)

    @app.post("/api/reconcile", response_model=ReconcileResponse)
    async def reconcile(
        request: ReconcileRequest,
        operator: str = Depends(wallet_auth),
    ) -> ReconcileResponse | JSONResponse:
        """Retry a failed datastore write for an already deployed market."""
        try:
            market = normalize_address(request.market_address)
        except InvalidAddress:
            return JSONResponse(status_code=400, content={"detail": "Invalid market address"})
        outcome = await reconciler.retry(
            market,
            _datastore_override(request.supabase_url, request.supabase_key),
        )
        if outcome is None:
            return JSONResponse(status_code=404, content={"detail": "No pending reconciliation for market"})
        RECONCILE_RESULTS.labels(result=outcome.db_update).inc()
        log.info("reconcile_retried", operator=operator, market=market, db_update=outcome.db_update)
        return ReconcileResponse(market_address=market, db_update=outcome.db_update, db_error=outcome.db_error)

    # -----------------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(
            status="ok",
            version=__version__,
            uptime_seconds=round(time.monotonic() - started, 1),
            toolkit_in_flight=in_flight["runs"],
            pending_reconciliations=len(reconciler.pending),
        )

    @app.get("/health/ready", response_model=ReadinessResponse)
    async def readiness() -> ReadinessResponse:
        """Deep readiness check of the toolkit configuration."""
        checks = {
            "rpc_source": bool(config.rpc_source),
            "deployer_pk": bool(config.deployer_pk),
            "escrow_asset": bool(config.escrow_asset),
            "toolkit_dir": os.path.isdir(config.toolkit_dir),
        }
        return ReadinessResponse(ready=all(checks.values()), checks=checks)

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(
            content=metrics_response(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return app
