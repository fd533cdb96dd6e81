"""Shared fixtures for gateway tests."""

from __future__ import annotations

import os
import sys
from collections.abc import Callable

import pytest

# Config defaults are read at import time; keep a developer's .env from leaking
# production markers or a real deployer key into the suite.
os.environ["APP_ENV"] = "test"
for _key in ("ALLOW_DEV_AUTH_FALLBACK", "NODE_ENV", "ENVIRONMENT", "RAILWAY_ENVIRONMENT_NAME", "OPERATOR_ADDRESSES"):
    os.environ.pop(_key, None)

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount

TEST_KEY = "0x" + "4c" * 32
OTHER_KEY = "0x" + "8f" * 32
MARKET = "0x" + "ab" * 20
YES_SHARE = "0x" + "cd" * 20
NO_SHARE = "0x" + "ef" * 20

TOOLKIT_ENV = {
    "ANKR_API_KEY": "test-ankr-key",
    "DEPLOYER_PK": "0x" + "11" * 32,
    "PATH": os.environ.get("PATH", ""),
}


def fake_toolkit(body: str) -> list[str]:
    """Command that runs ``body`` as a Python program in place of Hardhat."""
    return [sys.executable, "-c", body]


@pytest.fixture
def wallet() -> LocalAccount:
    return Account.from_key(TEST_KEY)


@pytest.fixture
def other_wallet() -> LocalAccount:
    return Account.from_key(OTHER_KEY)


@pytest.fixture
def sign() -> Callable[[LocalAccount, str], str]:
    """personal_sign a text message, returning 0x-prefixed hex."""

    def _sign(account: LocalAccount, message: str) -> str:
        signed = account.sign_message(encode_defunct(text=message))
        return "0x" + bytes(signed.signature).hex()

    return _sign
