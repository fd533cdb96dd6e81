"""Run the Hardhat deployment toolkit as a subprocess and interpret its result.

Each invocation moves through VALIDATING -> SPAWNING -> RUNNING -> COMPLETED.
The child gets the gateway's environment plus request-derived overrides,
always runs ``npx hardhat run scripts/<script> --network bscMainnet`` and has
its stdout and stderr merged into one buffer in arrival order.

Output contract the toolkit must uphold: the structured result is either a
single line prefixed with ``DEPLOY_RESULT:`` or, for older scripts, the final
JSON object on the combined output with no ``{`` printed after it.
"""

from __future__ import annotations

import asyncio
import enum
import json
import math
import os
import signal
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from picks_gateway.core.addresses import is_address, normalize_address
from picks_gateway.core.errors import ConfigMissing, DeployFailed, InvalidAddress, ParseError

log = structlog.get_logger()

TARGET_NETWORK = "bscMainnet"
RESULT_SENTINEL = "DEPLOY_RESULT:"
OUTPUT_TAIL_CHARS = 4000

DEPLOY_SCRIPT = "deploy-market.js"
RESOLVE_SCRIPT = "resolve-market.js"
CLAIM_SCRIPT = "claim-market.js"
REFUND_SCRIPT = "manual-refund.js"
MARKET_SCRIPTS = (DEPLOY_SCRIPT, RESOLVE_SCRIPT, CLAIM_SCRIPT, REFUND_SCRIPT)

RESOLVE_RESULTS = ("less", "more", "void", "yes", "no", "invalid", "under", "over")

_READ_CHUNK = 4096


class DeployState(enum.Enum):
    VALIDATING = "validating"
    SPAWNING = "spawning"
    RUNNING = "running"
    COMPLETED = "completed"


def validate_required_config(env: Mapping[str, str], *, require_asset: bool = True) -> list[str]:
    """Return the toolkit keys missing from ``env`` (empty = ready).

    Only deployments need an escrow asset; resolve, claim and refund act
    on an existing market.
    """
    missing: list[str] = []
    if not (env.get("ANKR_API_KEY") or env.get("BSC_RPC_URL")):
        missing.append("ANKR_API_KEY")
    if not env.get("DEPLOYER_PK"):
        missing.append("DEPLOYER_PK")
    if require_asset and not env.get("ESCROW_ASSET"):
        missing.append("ESCROW_ASSET")
    return missing


def _finite_int(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number")
    if not math.isfinite(value):
        raise ValueError(f"{name} must be finite")
    if value != int(value):
        raise ValueError(f"{name} must be a whole number")
    return int(value)


@dataclass(frozen=True)
class DeployParams:
    """Validated inputs for one market deployment."""

    name_prefix: str
    fee_bps: int
    asset: str
    end_time: int
    cutoff_time: int
    record_id: str | None = None

    @classmethod
    def build(
        cls,
        *,
        name_prefix: str,
        fee_bps: object,
        asset: str,
        end_time: object,
        cutoff_time: object,
        record_id: str | None = None,
    ) -> DeployParams:
        """Validate raw values; raises ValueError naming the offending field."""
        prefix = (name_prefix or "").strip()
        if not prefix or len(prefix) > 64:
            raise ValueError("name_prefix must be 1-64 characters")
        if any(ch in prefix for ch in "\r\n\x00"):
            raise ValueError("name_prefix must be a single line")
        fee = _finite_int("fee_bps", fee_bps)
        if not 0 <= fee <= 10_000:
            raise ValueError("fee_bps must be 0-10000")
        try:
            normalized_asset = normalize_address(asset)
        except InvalidAddress as e:
            raise ValueError("asset must be an address") from e
        end = _finite_int("end_time", end_time)
        cutoff = _finite_int("cutoff_time", cutoff_time)
        if end <= 0 or cutoff <= 0:
            raise ValueError("end_time and cutoff_time must be positive unix timestamps")
        if cutoff >= end:
            raise ValueError("cutoff_time must be before end_time")
        return cls(
            name_prefix=prefix,
            fee_bps=fee,
            asset=normalized_asset,
            end_time=end,
            cutoff_time=cutoff,
            record_id=record_id or None,
        )

    def env_overrides(self) -> dict[str, str]:
        overrides = {
            "MARKET_NAME_PREFIX": self.name_prefix,
            "FEE_BPS": str(self.fee_bps),
            "ESCROW_ASSET": self.asset,
            "MARKET_END_TIME": str(self.end_time),
            "MARKET_CUTOFF_TIME": str(self.cutoff_time),
        }
        if self.record_id:
            overrides["PICK_ID"] = self.record_id
        return overrides


def resolve_overrides(market_address: str, result: str) -> dict[str, str]:
    outcome = (result or "").strip().lower()
    if outcome not in RESOLVE_RESULTS:
        raise ValueError(f"result must be one of: {', '.join(RESOLVE_RESULTS)}")
    return {"MARKET_ADDRESS": normalize_address(market_address), "RESOLVE_RESULT": outcome}


def claim_overrides(market_address: str, wallet: str | None = None) -> dict[str, str]:
    overrides = {"MARKET_ADDRESS": normalize_address(market_address)}
    if wallet:
        overrides["CLAIM_WALLET"] = normalize_address(wallet)
    return overrides


def refund_overrides(market_address: str, wallet: str, direct: bool = False) -> dict[str, str]:
    """Environment for a manual refund of ``wallet``'s payout.

    With ``direct`` the deployer pays the wallet itself instead of topping
    up the market and calling ``claimFor``.
    """
    return {
        "MARKET_ADDRESS": normalize_address(market_address),
        "CLAIM_WALLET": normalize_address(wallet),
        "REFUND_DIRECT": "true" if direct else "false",
    }


class OutputBuffer:
    """Keeps the most recent ``limit`` bytes of process output."""

    def __init__(self, limit: int = 65_536) -> None:
        self._limit = limit
        self._data = bytearray()
        self.total_bytes = 0

    def write(self, chunk: bytes) -> None:
        self.total_bytes += len(chunk)
        self._data.extend(chunk)
        overflow = len(self._data) - self._limit
        if overflow > 0:
            del self._data[:overflow]

    @property
    def truncated(self) -> bool:
        return self.total_bytes > len(self._data)

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


def tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    return text[-limit:]


def parse_tool_output(buffer: str, exit_code: int | None = None) -> dict[str, Any]:
    """Extract the toolkit's JSON result from combined output.

    A ``DEPLOY_RESULT:`` line wins when present (the last one if several).
    Otherwise everything from the last ``{`` must parse as one JSON object.
    """
    for line in reversed(buffer.splitlines()):
        stripped = line.strip()
        if stripped.startswith(RESULT_SENTINEL):
            payload = stripped[len(RESULT_SENTINEL):].strip()
            try:
                parsed = json.loads(payload)
            except json.JSONDecodeError as e:
                raise ParseError(
                    f"invalid JSON after {RESULT_SENTINEL}: {e.msg}",
                    exit_code=exit_code,
                    output_tail=tail(buffer),
                ) from e
            if not isinstance(parsed, dict):
                raise ParseError("result is not a JSON object", exit_code=exit_code, output_tail=tail(buffer))
            return parsed

    start = buffer.rfind("{")
    if start < 0:
        raise ParseError("no JSON object in toolkit output", exit_code=exit_code, output_tail=tail(buffer))
    try:
        parsed = json.loads(buffer[start:].strip())
    except json.JSONDecodeError as e:
        raise ParseError(
            f"could not parse toolkit result: {e.msg}",
            exit_code=exit_code,
            output_tail=tail(buffer),
        ) from e
    if not isinstance(parsed, dict):
        raise ParseError("result is not a JSON object", exit_code=exit_code, output_tail=tail(buffer))
    return parsed


@dataclass
class DeployResult:
    """Outcome of one toolkit run."""

    success: bool
    exit_code: int | None
    data: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    error_type: str = ""
    output_tail: str = ""
    duration_s: float = 0.0

    @property
    def market_address(self) -> str | None:
        value = self.data.get("marketAddress")
        return normalize_address(value) if is_address(value) else None

    def raise_for_status(self) -> None:
        """Raise ParseError or DeployFailed unless the run succeeded."""
        if self.success:
            return
        if self.error_type == "ParseError":
            raise ParseError(self.error, exit_code=self.exit_code, output_tail=self.output_tail)
        raise DeployFailed(
            self.error or "toolkit run failed",
            exit_code=self.exit_code,
            output_tail=self.output_tail,
            result=self.data,
        )


def interpret(exit_code: int | None, output: str) -> DeployResult:
    """Turn an exit code and captured output into a DeployResult.

    The toolkit's own ``success`` flag is authoritative. Without one, exit 0
    only counts as success when a valid ``marketAddress`` came back.
    """
    output_tail = tail(output)
    try:
        data = parse_tool_output(output, exit_code=exit_code)
    except ParseError as e:
        return DeployResult(
            success=False,
            exit_code=exit_code,
            error=str(e),
            error_type="ParseError",
            output_tail=output_tail,
        )

    if exit_code != 0:
        error = str(data.get("error") or f"toolkit exited with code {exit_code}")
    elif data.get("success") is False:
        error = str(data.get("error") or data.get("detail") or data.get("code") or "toolkit reported failure")
    elif "success" not in data and not is_address(data.get("marketAddress")):
        error = "toolkit result has no success flag and no market address"
    else:
        return DeployResult(success=True, exit_code=exit_code, data=data, output_tail=output_tail)

    return DeployResult(
        success=False,
        exit_code=exit_code,
        data=data,
        error=error,
        error_type="DeployFailed",
        output_tail=output_tail,
    )


class DeploymentOrchestrator:
    """Spawns toolkit scripts with a deadline and a bounded output buffer."""

    def __init__(
        self,
        toolkit_dir: str = ".",
        timeout: float = 600.0,
        output_limit: int = 65_536,
        base_env: Mapping[str, str] | None = None,
        command: list[str] | None = None,
    ) -> None:
        self._toolkit_dir = toolkit_dir
        self._timeout = timeout
        self._output_limit = output_limit
        self._base_env = base_env
        self._command = command or ["npx", "hardhat", "run"]

    def build_env(self, overrides: Mapping[str, str]) -> dict[str, str]:
        """Ambient environment plus overrides; overrides always win."""
        env = dict(os.environ if self._base_env is None else self._base_env)
        env.update(overrides)
        return env

    def build_command(self, script: str) -> list[str]:
        if script not in MARKET_SCRIPTS:
            raise ValueError(f"unknown toolkit script: {script}")
        return [*self._command, f"scripts/{script}", "--network", TARGET_NETWORK]

    async def run(self, script: str, overrides: Mapping[str, str]) -> DeployResult:
        """Run one toolkit script to completion.

        Raises ConfigMissing before spawning when the toolkit keys are absent.
        Cancelling the calling task kills the child process.
        """
        state = DeployState.VALIDATING
        env = self.build_env(overrides)
        missing = validate_required_config(env, require_asset=script == DEPLOY_SCRIPT)
        if missing:
            log.warning("toolkit_config_missing", script=script, missing=missing, state=state.value)
            raise ConfigMissing(missing)
        cmd = self.build_command(script)

        state = DeployState.SPAWNING
        start = time.perf_counter()
        log.info("toolkit_spawning", script=script, network=TARGET_NETWORK, state=state.value)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self._toolkit_dir,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            log.error("toolkit_spawn_failed", script=script, error=str(e))
            return DeployResult(
                success=False,
                exit_code=None,
                error=f"could not start toolkit: {e}",
                error_type="DeployFailed",
                duration_s=time.perf_counter() - start,
            )

        state = DeployState.RUNNING
        log.info("toolkit_running", script=script, pid=proc.pid, state=state.value)
        output = OutputBuffer(self._output_limit)
        try:
            exit_code = await asyncio.wait_for(self._drain(proc, output), timeout=self._timeout)
        except TimeoutError:
            await self._kill(proc)
            duration = time.perf_counter() - start
            log.error("toolkit_timeout", script=script, timeout=self._timeout, pid=proc.pid)
            return DeployResult(
                success=False,
                exit_code=proc.returncode,
                error=f"toolkit timed out after {self._timeout}s",
                error_type="DeployFailed",
                output_tail=tail(output.text()),
                duration_s=duration,
            )
        except asyncio.CancelledError:
            await self._kill(proc)
            log.info("toolkit_cancelled", script=script, pid=proc.pid)
            raise

        state = DeployState.COMPLETED
        result = interpret(exit_code, output.text())
        result.duration_s = time.perf_counter() - start
        log.info(
            "toolkit_completed",
            script=script,
            state=state.value,
            exit_code=exit_code,
            success=result.success,
            error_type=result.error_type or None,
            output_bytes=output.total_bytes,
            output_truncated=output.truncated,
            duration_s=round(result.duration_s, 1),
        )
        return result

    @staticmethod
    async def _drain(proc: asyncio.subprocess.Process, output: OutputBuffer) -> int:
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(_READ_CHUNK)
            if not chunk:
                break
            output.write(chunk)
        return await proc.wait()

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        """Kill the child's whole process group.

        ``npx`` forks the real Hardhat process, so signalling only the direct
        child would leave the deployment running on-chain.
        """
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError) as kill_err:
            log.debug("toolkit_killpg_failed", error=str(kill_err), pid=proc.pid)
            try:
                proc.kill()
            except (ProcessLookupError, OSError) as err:
                log.debug("toolkit_kill_failed", error=str(err))
        try:
            await asyncio.wait_for(proc.wait(), timeout=5.0)
        except (TimeoutError, OSError) as wait_err:
            log.warning("toolkit_wait_failed", error=str(wait_err), pid=proc.pid)


class RecordLocks:
    """Record ids with a deployment in flight.

    Used from a single event loop; ``acquire`` never waits, so a second
    launch for a busy record is refused instead of queued.
    """

    def __init__(self) -> None:
        self._held: set[str] = set()

    def acquire(self, record_id: str) -> bool:
        if record_id in self._held:
            return False
        self._held.add(record_id)
        return True

    def release(self, record_id: str) -> None:
        self._held.discard(record_id)

    def __len__(self) -> int:
        return len(self._held)
