"""Tests for the FastAPI server endpoints."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest
from eth_account.signers.local import LocalAccount
from fastapi import FastAPI
from fastapi.testclient import TestClient

from picks_gateway.api.server import create_app
from picks_gateway.config import Config
from picks_gateway.core.credentials import CredentialIssuer
from picks_gateway.core.nonces import NonceStore
from picks_gateway.core.orchestrator import DeploymentOrchestrator
from picks_gateway.core.reconciler import DatastoreCredentials, Reconciler
from picks_gateway.core.session import SESSION_COOKIE, SessionGate
from tests.conftest import MARKET, NO_SHARE, TOOLKIT_ENV, YES_SHARE, fake_toolkit

ASSET = "0x" + "bb" * 20
PIN = "2468"
SECRET = "api-test-secret"

SUCCESS_TOOLKIT = f"""
import json, os
print("Deploying PickMarket...")
print(json.dumps({{
    "success": True,
    "marketAddress": "{MARKET}",
    "yesShareAddress": "{YES_SHARE}",
    "noShareAddress": "{NO_SHARE}",
    "feeBps": int(os.environ["FEE_BPS"]),
    "endTime": int(os.environ["MARKET_END_TIME"]),
    "cutoffTime": int(os.environ["MARKET_CUTOFF_TIME"]),
    "name": os.environ["MARKET_NAME_PREFIX"],
    "pick": os.environ.get("PICK_ID"),
}}))
"""

FAILING_TOOLKIT = """
import sys
print("ProviderError: insufficient funds for gas * price + value")
print('{"success": false, "error": "insufficient funds"}')
sys.exit(1)
"""

SLOW_TOOLKIT = f"""
import json, time
time.sleep(1.0)
print(json.dumps({{"success": True, "marketAddress": "{MARKET}"}}))
"""


def _config(**overrides: object) -> Config:
    """Create a Config with overridden fields (bypasses frozen restriction)."""
    config = Config()
    values: dict[str, object] = {
        "admin_pin": PIN,
        "admin_path": "ops",
        "dev_auth_fallback": False,
        "operator_addresses_raw": "",
        "fee_bps": 300,
        "escrow_asset": ASSET,
    }
    values.update(overrides)
    for k, v in values.items():
        object.__setattr__(config, k, v)
    return config


@dataclass
class _Datastore:
    """In-memory stand-in for the Supabase REST table."""

    rows: dict[str, dict[str, Any]] = field(default_factory=dict)
    fail_writes: bool = False
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        record_id = request.url.params.get("id", "").removeprefix("eq.")
        if request.method == "GET":
            row = self.rows.get(record_id)
            return httpx.Response(200, json=[row] if row else [])
        if request.method == "PATCH":
            if self.fail_writes:
                return httpx.Response(500, json={"message": "connection reset"})
            row = self.rows.get(record_id)
            if row is None:
                return httpx.Response(200, json=[])
            row.update(json.loads(request.content))
            return httpx.Response(200, json=[row])
        return httpx.Response(405)


@dataclass
class _Gateway:
    app: FastAPI
    client: TestClient
    db: _Datastore
    issuer: CredentialIssuer


def _gateway(
    toolkit: str = SUCCESS_TOOLKIT,
    *,
    base_env: dict[str, str] | None = None,
    datastore: bool = True,
    auth_rate_limit_capacity: int = 1000,
    **config_overrides: object,
) -> _Gateway:
    config = _config(**config_overrides)
    db = _Datastore(rows={"pick-1": {"id": "pick-1", "title": "Celtics ML", "duration_hours": 2}})
    reconciler = Reconciler(
        credentials=DatastoreCredentials(url="https://db.example.supabase.co", key="svc") if datastore else None,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(db)),
    )
    issuer = CredentialIssuer(SECRET)
    app = create_app(
        config=config,
        nonce_store=NonceStore(ttl=300),
        issuer=issuer,
        session_gate=SessionGate(config.admin_pin),
        orchestrator=DeploymentOrchestrator(
            base_env=TOOLKIT_ENV if base_env is None else base_env,
            command=fake_toolkit(toolkit),
            timeout=30,
        ),
        reconciler=reconciler,
        rate_limit_capacity=1000,
        rate_limit_rate=1000,
        auth_rate_limit_capacity=auth_rate_limit_capacity,
        auth_rate_limit_rate=0.001,
    )
    client = TestClient(app, base_url="https://testserver", follow_redirects=False)
    return _Gateway(app=app, client=client, db=db, issuer=issuer)


def _bearer(gw: _Gateway, address: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {gw.issuer.issue(address).token}"}


def _login(
    client: TestClient,
    account: LocalAccount,
    sign: Callable[[LocalAccount, str], str],
) -> httpx.Response:
    challenge = client.get("/auth-nonce", params={"address": account.address}).json()
    return client.post(
        "/auth-verify",
        json={
            "address": account.address,
            "nonce": challenge["nonce"],
            "signature": sign(account, challenge["message"]),
            "issuedAt": challenge["issuedAt"],
        },
    )


DEPLOY_BODY = {"namePrefix": "Lakers -3.5", "feeBps": 250, "endTime": 4_000_000_000, "cutoffTime": 3_999_998_200}


class TestWalletAuth:
    def test_nonce_shape(self, wallet: LocalAccount) -> None:
        gw = _gateway()
        resp = gw.client.get("/auth-nonce", params={"address": wallet.address})
        assert resp.status_code == 200
        data = resp.json()
        assert data["address"] == wallet.address.lower()
        assert data["expiresAt"] - data["issuedAt"] == 300
        assert f"Nonce: {data['nonce']}" in data["message"]

    @pytest.mark.parametrize("address", ["", "0x1234", "hello"])
    def test_nonce_rejects_bad_address(self, address: str) -> None:
        gw = _gateway()
        resp = gw.client.get("/auth-nonce", params={"address": address})
        assert resp.status_code == 400

    def test_verify_issues_usable_token(self, wallet: LocalAccount, sign) -> None:
        gw = _gateway()
        resp = _login(gw.client, wallet, sign)
        assert resp.status_code == 200
        data = resp.json()
        assert data["address"] == wallet.address.lower()
        assert gw.issuer.verify(data["token"]).address == wallet.address.lower()

        deploy = gw.client.post(
            "/api/deploy-market",
            json=DEPLOY_BODY,
            headers={"Authorization": f"Bearer {data['token']}"},
        )
        assert deploy.status_code == 200

    def test_nonce_is_single_use(self, wallet: LocalAccount, sign) -> None:
        gw = _gateway()
        challenge = gw.client.get("/auth-nonce", params={"address": wallet.address}).json()
        body = {
            "address": wallet.address,
            "nonce": challenge["nonce"],
            "signature": sign(wallet, challenge["message"]),
            "issuedAt": challenge["issuedAt"],
        }
        assert gw.client.post("/auth-verify", json=body).status_code == 200
        replay = gw.client.post("/auth-verify", json=body)
        assert replay.status_code == 401
        assert replay.json()["detail"] == "Authentication failed"

    def test_signature_from_other_wallet(self, wallet: LocalAccount, other_wallet: LocalAccount, sign) -> None:
        gw = _gateway()
        challenge = gw.client.get("/auth-nonce", params={"address": wallet.address}).json()
        resp = gw.client.post(
            "/auth-verify",
            json={
                "address": wallet.address,
                "nonce": challenge["nonce"],
                "signature": sign(other_wallet, challenge["message"]),
                "issuedAt": challenge["issuedAt"],
            },
        )
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Authentication failed"

    def test_bad_signature_does_not_burn_nonce(self, wallet: LocalAccount, sign) -> None:
        gw = _gateway()
        challenge = gw.client.get("/auth-nonce", params={"address": wallet.address}).json()
        body = {"address": wallet.address, "nonce": challenge["nonce"], "issuedAt": challenge["issuedAt"]}
        assert gw.client.post("/auth-verify", json={**body, "signature": "0xdead"}).status_code == 401
        good = gw.client.post("/auth-verify", json={**body, "signature": sign(wallet, challenge["message"])})
        assert good.status_code == 200

    def test_out_of_range_issued_at_fails_closed(self, wallet: LocalAccount, sign) -> None:
        gw = _gateway()
        challenge = gw.client.get("/auth-nonce", params={"address": wallet.address}).json()
        body = {"address": wallet.address, "nonce": challenge["nonce"], "signature": sign(wallet, challenge["message"])}
        for issued_at in (10**20, -1):
            resp = gw.client.post("/auth-verify", json={**body, "issuedAt": issued_at})
            assert resp.status_code == 422
        good = gw.client.post("/auth-verify", json={**body, "issuedAt": challenge["issuedAt"]})
        assert good.status_code == 200

    def test_unknown_nonce(self, wallet: LocalAccount, sign) -> None:
        gw = _gateway()
        from picks_gateway.core.addresses import build_challenge_message

        message = build_challenge_message(wallet.address, "made-up")
        resp = gw.client.post(
            "/auth-verify",
            json={"address": wallet.address, "nonce": "made-up", "signature": sign(wallet, message)},
        )
        assert resp.status_code == 401

    def test_verify_bad_address(self) -> None:
        gw = _gateway()
        resp = gw.client.post("/auth-verify", json={"address": "0xnope", "nonce": "n", "signature": "0x00"})
        assert resp.status_code == 400


class TestPrivilegedAccess:
    def test_no_credentials(self) -> None:
        gw = _gateway()
        resp = gw.client.post("/api/deploy-market", json=DEPLOY_BODY)
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Authentication required"

    def test_invalid_token(self) -> None:
        gw = _gateway()
        resp = gw.client.post("/api/deploy-market", json=DEPLOY_BODY, headers={"Authorization": "Bearer junk"})
        assert resp.status_code == 401

    def test_expired_token(self) -> None:
        gw = _gateway()
        token = CredentialIssuer(SECRET, clock=lambda: 1_000.0).issue(MARKET).token
        resp = gw.client.post("/api/deploy-market", json=DEPLOY_BODY, headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_address_header_ignored_without_fallback(self) -> None:
        gw = _gateway(dev_auth_fallback=False)
        resp = gw.client.post("/api/deploy-market", json=DEPLOY_BODY, headers={"X-Wallet-Address": MARKET})
        assert resp.status_code == 401

    def test_dev_fallback_header(self) -> None:
        gw = _gateway(dev_auth_fallback=True)
        resp = gw.client.post("/api/deploy-market", json=DEPLOY_BODY, headers={"X-Wallet-Address": MARKET})
        assert resp.status_code == 200

    def test_dev_fallback_query_parameter(self) -> None:
        gw = _gateway(dev_auth_fallback=True)
        resp = gw.client.post("/api/deploy-market", params={"address": MARKET}, json=DEPLOY_BODY)
        assert resp.status_code == 200

    def test_dev_fallback_rejects_malformed_address(self) -> None:
        gw = _gateway(dev_auth_fallback=True)
        resp = gw.client.post("/api/deploy-market", json=DEPLOY_BODY, headers={"X-Wallet-Address": "alice"})
        assert resp.status_code == 401

    def test_operator_allowlist(self, wallet: LocalAccount, other_wallet: LocalAccount) -> None:
        gw = _gateway(operator_addresses_raw=wallet.address)
        allowed = gw.client.post("/api/deploy-market", json=DEPLOY_BODY, headers=_bearer(gw, wallet.address))
        assert allowed.status_code == 200
        denied = gw.client.post("/api/deploy-market", json=DEPLOY_BODY, headers=_bearer(gw, other_wallet.address))
        assert denied.status_code == 403


class TestAdminConsole:
    def test_unconfigured_pin_returns_500_everywhere(self) -> None:
        gw = _gateway(admin_pin="")
        assert gw.client.get("/mein/ops/login").status_code == 500
        assert gw.client.post("/mein/ops/login", data={"pin": ""}).status_code == 500
        assert gw.client.post("/mein/ops/logout").status_code == 500
        assert gw.client.get("/mein/ops/launch").status_code == 500
        resp = gw.client.get("/mein/ops/login")
        assert "<form" not in resp.text

    def test_login_form(self) -> None:
        gw = _gateway()
        resp = gw.client.get("/mein/ops/login")
        assert resp.status_code == 200
        assert 'name="pin"' in resp.text

    def test_custom_admin_path(self) -> None:
        gw = _gateway(admin_path="hidden-door")
        assert gw.client.get("/mein/hidden-door/login").status_code == 200
        assert gw.client.get("/mein/ops/login").status_code == 404

    def test_wrong_pin(self) -> None:
        gw = _gateway()
        resp = gw.client.post("/mein/ops/login", data={"pin": "0000"})
        assert resp.status_code == 401
        assert SESSION_COOKIE not in resp.headers.get("set-cookie", "")
        assert "Invalid PIN" in resp.text

    def test_pin_guessing_is_throttled(self) -> None:
        gw = _gateway(auth_rate_limit_capacity=3)
        codes = [gw.client.post("/mein/ops/login", data={"pin": f"{n:04d}"}).status_code for n in range(3)]
        assert codes == [401, 401, 401]
        blocked = gw.client.post("/mein/ops/login", data={"pin": PIN})
        assert blocked.status_code == 429
        assert int(blocked.headers["retry-after"]) > 60
        assert SESSION_COOKIE not in blocked.headers.get("set-cookie", "")
        # The form itself and the rest of the API stay reachable
        assert gw.client.get("/mein/ops/login").status_code == 200
        assert gw.client.get("/auth-nonce", params={"address": MARKET}).status_code == 200

    def test_signed_challenge_attempts_are_throttled(self, wallet: LocalAccount) -> None:
        gw = _gateway(auth_rate_limit_capacity=2)
        body = {"address": wallet.address, "nonce": "n", "signature": "0xdead"}
        assert [gw.client.post("/auth-verify", json=body).status_code for _ in range(3)] == [401, 401, 429]

    def test_login_sets_hardened_cookie(self) -> None:
        gw = _gateway()
        resp = gw.client.post("/mein/ops/login", data={"pin": PIN})
        assert resp.status_code == 303
        assert resp.headers["location"] == "/mein/ops/launch"
        cookie = resp.headers["set-cookie"]
        assert cookie.startswith(f"{SESSION_COOKIE}=")
        assert "HttpOnly" in cookie
        assert "Secure" in cookie
        assert "samesite=strict" in cookie.lower()
        assert "Max-Age=604800" in cookie

    def test_launch_requires_session(self) -> None:
        gw = _gateway()
        resp = gw.client.get("/mein/ops/launch")
        assert resp.status_code == 303
        assert resp.headers["location"] == "/mein/ops/login"

    def test_session_unlocks_launch_and_logout_revokes(self) -> None:
        gw = _gateway()
        gw.client.post("/mein/ops/login", data={"pin": PIN})
        assert gw.client.get("/mein/ops/launch").status_code == 200
        assert gw.client.get("/mein/ops/login").status_code == 303

        old_cookie = gw.client.cookies.get(SESSION_COOKIE)
        assert old_cookie
        logout = gw.client.post("/mein/ops/logout")
        assert logout.status_code == 303
        assert "Max-Age=0" in logout.headers["set-cookie"]
        assert gw.client.get("/mein/ops/launch").status_code == 303

        # A copy of the revoked cookie is useless too
        fresh = TestClient(gw.app, base_url="https://testserver", follow_redirects=False)
        resp = fresh.get("/mein/ops/launch", headers={"Cookie": f"{SESSION_COOKIE}={old_cookie}"})
        assert resp.status_code == 303

    def test_forged_cookie(self) -> None:
        gw = _gateway()
        fingerprint = SessionGate(PIN).fingerprint()
        resp = gw.client.get("/mein/ops/launch", headers={"Cookie": f"{SESSION_COOKIE}={fingerprint}"})
        assert resp.status_code == 303

    def test_launch_form_deploys_for_pick(self) -> None:
        gw = _gateway()
        gw.client.post("/mein/ops/login", data={"pin": PIN})
        resp = gw.client.post("/mein/ops/launch", data={"pick_id": "pick-1", "name_prefix": "", "fee_bps": ""})
        assert resp.status_code == 200
        assert MARKET in resp.text
        assert gw.db.rows["pick-1"]["evm_market_address"] == MARKET

    def test_launch_form_escapes_output(self) -> None:
        gw = _gateway(FAILING_TOOLKIT.replace("insufficient funds", "<script>alert(1)</script>"))
        gw.client.post("/mein/ops/login", data={"pin": PIN})
        resp = gw.client.post("/mein/ops/launch", data={"pick_id": "", "name_prefix": "X", "fee_bps": "300"})
        assert resp.status_code == 502
        assert "<script>alert(1)</script>" not in resp.text
        assert "&lt;script&gt;" in resp.text

    def test_launch_form_rejects_bad_fee(self) -> None:
        gw = _gateway()
        gw.client.post("/mein/ops/login", data={"pin": PIN})
        resp = gw.client.post("/mein/ops/launch", data={"pick_id": "", "name_prefix": "X", "fee_bps": "lots"})
        assert resp.status_code == 400


class TestDeployMarket:
    def test_success(self) -> None:
        gw = _gateway()
        resp = gw.client.post("/api/deploy-market", json=DEPLOY_BODY, headers=_bearer(gw, MARKET))
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["marketAddress"] == MARKET
        assert data["yesShareAddress"] == YES_SHARE
        assert data["noShareAddress"] == NO_SHARE
        assert data["feeBps"] == 250
        assert data["endTime"] == 4_000_000_000
        assert data["cutoffTime"] == 3_999_998_200
        assert data["dbUpdate"] == "skipped"
        assert "dbError" not in data

    def test_defaults_window_and_fee(self) -> None:
        gw = _gateway()
        resp = gw.client.post("/api/deploy-market", json={}, headers=_bearer(gw, MARKET))
        data = resp.json()
        assert data["feeBps"] == 300
        assert data["endTime"] - data["cutoffTime"] == 1800
        assert data["windowSource"] == "default"
        assert data["asset"] == ASSET

    @pytest.mark.parametrize(
        "body",
        [
            {"feeBps": 10_001},
            {"feeBps": 1.5},
            {"endTime": 4_000_000_000, "cutoffTime": 4_000_000_000},
            {"asset": "WBNB"},
            {"namePrefix": ""},
        ],
    )
    def test_invalid_params(self, body: dict) -> None:
        gw = _gateway()
        resp = gw.client.post("/api/deploy-market", json=body, headers=_bearer(gw, MARKET))
        assert resp.status_code == 400

    def test_non_finite_fee(self) -> None:
        gw = _gateway()
        resp = gw.client.post(
            "/api/deploy-market",
            content=b'{"feeBps": Infinity}',
            headers={**_bearer(gw, MARKET), "Content-Type": "application/json"},
        )
        assert resp.status_code in (400, 422)

    def test_toolkit_failure(self) -> None:
        gw = _gateway(FAILING_TOOLKIT)
        resp = gw.client.post("/api/deploy-market", json=DEPLOY_BODY, headers=_bearer(gw, MARKET))
        assert resp.status_code == 502
        data = resp.json()
        assert data["errorType"] == "DeployFailed"
        assert data["exitCode"] == 1
        assert "insufficient funds for gas" in data["output"]
        assert len(data["output"]) <= 4000

    def test_unparseable_output(self) -> None:
        gw = _gateway("print('HH8: There is one or more errors in your config file')")
        resp = gw.client.post("/api/deploy-market", json=DEPLOY_BODY, headers=_bearer(gw, MARKET))
        assert resp.status_code == 502
        assert resp.json()["errorType"] == "ParseError"

    def test_missing_toolkit_config(self) -> None:
        gw = _gateway(base_env={"PATH": ""})
        resp = gw.client.post("/api/deploy-market", json=DEPLOY_BODY, headers=_bearer(gw, MARKET))
        assert resp.status_code == 500
        assert resp.json()["missing"] == ["ANKR_API_KEY", "DEPLOYER_PK"]

    def test_db_failure_still_200(self) -> None:
        gw = _gateway()
        gw.db.fail_writes = True
        resp = gw.client.post(
            "/api/deploy-market",
            json={**DEPLOY_BODY, "pickId": "pick-1"},
            headers=_bearer(gw, MARKET),
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["marketAddress"] == MARKET
        assert data["dbUpdate"] == "failed"
        assert data["dbError"]

    def test_datastore_override(self) -> None:
        gw = _gateway(datastore=False)
        resp = gw.client.post(
            "/api/deploy-market",
            json={**DEPLOY_BODY, "pickId": "pick-1", "supabaseUrl": "https://alt.supabase.co", "supabaseKey": "k"},
            headers=_bearer(gw, MARKET),
        )
        assert resp.json()["dbUpdate"] == "ok"
        assert gw.db.requests[-1].url.host == "alt.supabase.co"


class TestLaunchEvmMarket:
    def test_launch_from_record(self) -> None:
        gw = _gateway()
        resp = gw.client.post("/api/launch-evm-market", json={"pickId": "pick-1"}, headers=_bearer(gw, MARKET))
        assert resp.status_code == 200
        data = resp.json()
        assert data["windowSource"] == "record"
        assert data["namePrefix"] == "Celtics ML"
        assert data["pickId"] == "pick-1"
        assert data["endTime"] - data["cutoffTime"] == 1800
        assert data["dbUpdate"] == "ok"
        row = gw.db.rows["pick-1"]
        assert row["evm_market_address"] == MARKET
        assert row["evm_yes_share_address"] == YES_SHARE

    def test_unknown_record_uses_default_window(self) -> None:
        gw = _gateway()
        resp = gw.client.post("/api/launch-evm-market", json={"pickId": "pick-404"}, headers=_bearer(gw, MARKET))
        assert resp.status_code == 200
        data = resp.json()
        assert data["windowSource"] == "default"
        assert data["dbUpdate"] == "failed"

    @pytest.mark.parametrize("fields", [{"duration_hours": 1e308}, {"expires_at": "9" * 400}])
    def test_overflowing_record_uses_default_window(self, fields: dict) -> None:
        gw = _gateway()
        gw.db.rows["pick-1"] = {"id": "pick-1", "title": "Celtics ML", **fields}
        resp = gw.client.post("/api/launch-evm-market", json={"pickId": "pick-1"}, headers=_bearer(gw, MARKET))
        assert resp.status_code == 200
        assert resp.json()["windowSource"] == "default"

    def test_missing_pick_id(self) -> None:
        gw = _gateway()
        resp = gw.client.post("/api/launch-evm-market", json={}, headers=_bearer(gw, MARKET))
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_concurrent_launch_for_same_pick_conflicts(self) -> None:
        gw = _gateway(SLOW_TOOLKIT)
        headers = _bearer(gw, MARKET)
        transport = httpx.ASGITransport(app=gw.app)
        async with httpx.AsyncClient(transport=transport, base_url="https://testserver") as client:
            first, second = await asyncio.gather(
                client.post("/api/launch-evm-market", json={"pickId": "pick-1"}, headers=headers),
                client.post("/api/launch-evm-market", json={"pickId": "pick-1"}, headers=headers),
            )
            assert sorted([first.status_code, second.status_code]) == [200, 409]

            # The lock is released once the first launch finishes
            third = await client.post("/api/launch-evm-market", json={"pickId": "pick-1"}, headers=headers)
            assert third.status_code == 200


class TestMarketScripts:
    def test_resolve(self) -> None:
        body = "import json, os\nprint(json.dumps({'success': True, 'outcome': os.environ['RESOLVE_RESULT']}))"
        gw = _gateway(body)
        resp = gw.client.post(
            "/api/resolve-market",
            json={"marketAddress": MARKET, "result": "Over"},
            headers=_bearer(gw, MARKET),
        )
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "result": {"success": True, "outcome": "over"}}

    def test_resolve_rejects_unknown_result(self) -> None:
        gw = _gateway()
        resp = gw.client.post(
            "/api/resolve-market",
            json={"marketAddress": MARKET, "result": "push"},
            headers=_bearer(gw, MARKET),
        )
        assert resp.status_code == 400

    def test_claim(self) -> None:
        body = "import json, os\nprint(json.dumps({'success': True, 'wallet': os.environ.get('CLAIM_WALLET')}))"
        gw = _gateway(body)
        resp = gw.client.post(
            "/api/claim-market",
            json={"marketAddress": MARKET, "wallet": YES_SHARE},
            headers=_bearer(gw, MARKET),
        )
        assert resp.status_code == 200
        assert resp.json()["result"]["wallet"] == YES_SHARE

    def test_claim_bad_market(self) -> None:
        gw = _gateway()
        resp = gw.client.post("/api/claim-market", json={"marketAddress": "0x12"}, headers=_bearer(gw, MARKET))
        assert resp.status_code == 400

    def test_direct_refund(self) -> None:
        body = (
            "import json, os, sys\n"
            "print('Sending direct refund of 0.5 BNB', flush=True)\n"
            "print('DEPLOY_RESULT: ' + json.dumps({'success': True, 'action': 'direct', 'argv': sys.argv[1:],"
            " 'env': {k: os.environ[k] for k in ('MARKET_ADDRESS', 'CLAIM_WALLET', 'REFUND_DIRECT')}}))\n"
        )
        gw = _gateway(body)
        resp = gw.client.post(
            "/api/refund-market",
            json={"marketAddress": MARKET, "wallet": NO_SHARE.upper().replace("0X", "0x"), "direct": True},
            headers=_bearer(gw, MARKET),
        )
        assert resp.status_code == 200
        result = resp.json()["result"]
        assert result["argv"] == ["scripts/manual-refund.js", "--network", "bscMainnet"]
        assert result["env"] == {"MARKET_ADDRESS": MARKET, "CLAIM_WALLET": NO_SHARE, "REFUND_DIRECT": "true"}

    def test_refund_reverted(self) -> None:
        body = "import sys\nprint('manual-refund failed: Market is not resolved yet', file=sys.stderr)\nsys.exit(1)\n"
        gw = _gateway(body)
        resp = gw.client.post(
            "/api/refund-market",
            json={"marketAddress": MARKET, "wallet": NO_SHARE},
            headers=_bearer(gw, MARKET),
        )
        assert resp.status_code == 502
        assert "Market is not resolved yet" in resp.json()["output"]

    def test_refund_requires_wallet(self) -> None:
        gw = _gateway()
        missing = gw.client.post("/api/refund-market", json={"marketAddress": MARKET}, headers=_bearer(gw, MARKET))
        assert missing.status_code == 422
        bad = gw.client.post(
            "/api/refund-market",
            json={"marketAddress": MARKET, "wallet": "0xnope"},
            headers=_bearer(gw, MARKET),
        )
        assert bad.status_code == 400

    def test_scripts_require_auth(self) -> None:
        gw = _gateway()
        assert gw.client.post("/api/resolve-market", json={"marketAddress": MARKET, "result": "yes"}).status_code == 401
        assert gw.client.post("/api/claim-market", json={"marketAddress": MARKET}).status_code == 401
        refund = {"marketAddress": MARKET, "wallet": NO_SHARE}
        assert gw.client.post("/api/refund-market", json=refund).status_code == 401


class TestReconcileEndpoint:
    def test_retry_after_db_failure(self) -> None:
        gw = _gateway()
        gw.db.fail_writes = True
        deploy = gw.client.post("/api/launch-evm-market", json={"pickId": "pick-1"}, headers=_bearer(gw, MARKET))
        assert deploy.json()["dbUpdate"] == "failed"

        gw.db.fail_writes = False
        resp = gw.client.post("/api/reconcile", json={"marketAddress": MARKET}, headers=_bearer(gw, MARKET))
        assert resp.status_code == 200
        assert resp.json() == {"marketAddress": MARKET, "dbUpdate": "ok", "dbError": None}
        assert gw.db.rows["pick-1"]["evm_market_address"] == MARKET
        assert gw.client.get("/health").json()["pending_reconciliations"] == 0

    def test_unknown_market(self) -> None:
        gw = _gateway()
        resp = gw.client.post("/api/reconcile", json={"marketAddress": MARKET}, headers=_bearer(gw, MARKET))
        assert resp.status_code == 404

    def test_requires_auth(self) -> None:
        gw = _gateway()
        assert gw.client.post("/api/reconcile", json={"marketAddress": MARKET}).status_code == 401


class TestOperationalEndpoints:
    def test_health(self) -> None:
        gw = _gateway()
        resp = gw.client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["version"] == "0.1.0"
        assert data["toolkit_in_flight"] == 0

    def test_readiness_reports_checks(self) -> None:
        gw = _gateway(ankr_api_key="k", deployer_pk="0x" + "11" * 32)
        data = gw.client.get("/health/ready").json()
        assert data["ready"] is True
        assert set(data["checks"]) == {"rpc_source", "deployer_pk", "escrow_asset", "toolkit_dir"}

    def test_readiness_not_ready_without_key(self) -> None:
        gw = _gateway(ankr_api_key="", bsc_rpc_url="", deployer_pk="")
        data = gw.client.get("/health/ready").json()
        assert data["ready"] is False
        assert data["checks"]["deployer_pk"] is False

    def test_metrics(self) -> None:
        gw = _gateway()
        gw.client.post("/api/deploy-market", json=DEPLOY_BODY, headers=_bearer(gw, MARKET))
        resp = gw.client.get("/metrics")
        assert resp.status_code == 200
        assert "picks_gateway_toolkit_runs_total" in resp.text
        assert "picks_gateway_requests_total" in resp.text

    def test_request_id_and_security_headers(self) -> None:
        gw = _gateway()
        resp = gw.client.get("/health", headers={"X-Request-ID": "trace-1"})
        assert resp.headers["x-request-id"] == "trace-1"
        assert resp.headers["x-content-type-options"] == "nosniff"

    def test_body_limit(self) -> None:
        gw = _gateway()
        resp = gw.client.post(
            "/auth-verify",
            content=b"x" * (1_048_576 + 1),
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 413

    def test_rate_limit(self) -> None:
        gw = _gateway()
        app = create_app(
            config=_config(),
            nonce_store=NonceStore(),
            issuer=CredentialIssuer(SECRET),
            session_gate=SessionGate(PIN),
            orchestrator=DeploymentOrchestrator(base_env=TOOLKIT_ENV),
            reconciler=Reconciler(http_client=httpx.AsyncClient(transport=httpx.MockTransport(gw.db))),
            rate_limit_capacity=2,
            rate_limit_rate=1,
        )
        client = TestClient(app, base_url="https://testserver")
        codes = [client.get("/auth-nonce", params={"address": MARKET}).status_code for _ in range(4)]
        assert codes[:2] == [200, 200]
        assert 429 in codes
