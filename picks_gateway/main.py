"""Entry point for the picks gateway.

Builds the auth stores, the toolkit orchestrator and the datastore
reconciler from the environment, then serves the FastAPI app until SIGTERM
or SIGINT.
"""

from __future__ import annotations

import asyncio
import os
import signal

import structlog
import uvicorn

from picks_gateway.logging import configure_logging

configure_logging()

from picks_gateway import __version__
from picks_gateway.api.server import create_app
from picks_gateway.config import Config
from picks_gateway.core.credentials import CredentialIssuer, resolve_signing_secret
from picks_gateway.core.errors import ConfigMissing
from picks_gateway.core.nonces import NonceStore
from picks_gateway.core.orchestrator import DeploymentOrchestrator
from picks_gateway.core.reconciler import DatastoreCredentials, Reconciler
from picks_gateway.core.session import SessionGate

log = structlog.get_logger()


async def run_server(app: object, host: str, port: int) -> None:
    """Run uvicorn as an async task."""
    config = uvicorn.Config(
        app, host=host, port=port, log_level="info",
        timeout_graceful_shutdown=10,
    )
    server = uvicorn.Server(config)
    await server.serve()


async def async_main() -> None:
    config = Config()
    warnings = config.validate()
    for w in warnings:
        log.warning("config_warning", msg=w)

    try:
        secret = resolve_signing_secret(config.auth_secret, config.admin_pin, config.development)
    except ConfigMissing as e:
        log.critical("signing_secret_missing", missing=e.missing)
        raise SystemExit(1) from e

    reconciler = Reconciler(
        credentials=DatastoreCredentials(url=config.supabase_url, key=config.supabase_key),
        table=config.supabase_table,
        timeout=config.http_timeout,
    )
    orchestrator = DeploymentOrchestrator(
        toolkit_dir=config.toolkit_dir,
        timeout=config.deploy_timeout,
        output_limit=config.deploy_output_limit,
    )

    app = create_app(
        config=config,
        nonce_store=NonceStore(ttl=config.nonce_ttl),
        issuer=CredentialIssuer(secret),
        session_gate=SessionGate(config.admin_pin),
        orchestrator=orchestrator,
        reconciler=reconciler,
        rate_limit_capacity=config.rate_limit_capacity,
        rate_limit_rate=config.rate_limit_rate,
        auth_rate_limit_capacity=config.auth_rate_limit_capacity,
        auth_rate_limit_rate=config.auth_rate_limit_per_minute / 60,
    )

    log.info(
        "gateway_starting",
        version=__version__,
        host=config.api_host,
        port=config.api_port,
        admin_console=bool(config.admin_pin),
        dev_auth_fallback=config.dev_auth_fallback,
        operator_allowlist=len(config.operator_addresses),
        datastore_configured=config.datastore_configured,
        toolkit_dir=config.toolkit_dir,
        log_format=os.getenv("LOG_FORMAT", "console"),
    )

    server_task = asyncio.create_task(run_server(app, config.api_host, config.api_port))

    shutdown_event = asyncio.Event()

    def _shutdown(sig: signal.Signals) -> None:
        log.info("shutdown_signal", signal=sig.name)
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown, sig)

    # Stop on a signal, or if uvicorn exits on its own (e.g. port in use)
    waiter = asyncio.create_task(shutdown_event.wait())
    await asyncio.wait({server_task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    log.info("shutting_down")
    for t in (server_task, waiter):
        t.cancel()
    try:
        await asyncio.wait_for(
            asyncio.gather(server_task, waiter, return_exceptions=True),
            timeout=15.0,
        )
    except TimeoutError:
        log.warning("shutdown_timeout", msg="Tasks did not finish within 15s")
    try:
        await reconciler.close()
    except Exception as e:
        log.warning("reconciler_close_error", error=str(e))
    if reconciler.pending:
        log.warning("unreconciled_markets", markets=sorted(reconciler.pending))
    log.info("shutdown_complete")


def main() -> None:
    """Start the picks gateway."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
