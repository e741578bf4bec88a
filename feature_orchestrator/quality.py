"""Quality gate: run lint / typecheck / test / build commands in order."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from .agent import CancellationToken
from .config import QualityCheck
from .errors import FeatureAbortedError
from .models import QualityCheckOutcome, QualityGateResult

logger = logging.getLogger("orchestrator")

MAX_CHECK_OUTPUT = 4000


async def _communicate(
    proc: asyncio.subprocess.Process,
    timeout: float,
    cancellation: CancellationToken | None,
) -> bytes:
    """Read the process output, racing the timeout and the stop signal."""
    if cancellation is None:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        return stdout

    reader = asyncio.ensure_future(proc.communicate())
    stopper = asyncio.ensure_future(cancellation.wait())
    try:
        done, _ = await asyncio.wait(
            {reader, stopper}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        stopper.cancel()
        if not reader.done():
            reader.cancel()

    if reader in done:
        stdout, _ = reader.result()
        return stdout
    if stopper in done:
        raise FeatureAbortedError("Quality checks aborted")
    raise asyncio.TimeoutError


async def run_check(
    check: QualityCheck,
    working_dir: Path,
    timeout: float,
    cancellation: CancellationToken | None = None,
) -> QualityGateResult:
    """Run one shell command. Success is a zero exit code within the timeout.

    The child is killed whenever this returns or raises before it exits.
    """
    start = time.monotonic()
    proc = await asyncio.create_subprocess_shell(
        check.command,
        cwd=str(working_dir),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        try:
            stdout = await _communicate(proc, timeout, cancellation)
        except asyncio.TimeoutError:
            return QualityGateResult(
                name=check.name,
                status="fail",
                duration_ms=int((time.monotonic() - start) * 1000),
                output=f"Timed out after {timeout:.0f}s: {check.command}",
            )

        output = stdout.decode(errors="replace") if stdout else ""
        return QualityGateResult(
            name=check.name,
            status="pass" if proc.returncode == 0 else "fail",
            duration_ms=int((time.monotonic() - start) * 1000),
            output=output[-MAX_CHECK_OUTPUT:] or None,
        )
    finally:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()


async def run_quality_checks(
    checks: list[QualityCheck],
    working_dir: Path,
    timeout: float = 120.0,
    cancellation: CancellationToken | None = None,
) -> QualityCheckOutcome:
    """Run checks sequentially. After the first failure the rest are recorded as skipped.

    Raises ``FeatureAbortedError`` as soon as ``cancellation`` fires.
    """
    results: list[QualityGateResult] = []
    failed = False

    for check in checks:
        if failed:
            results.append(QualityGateResult(name=check.name, status="skipped"))
            continue
        if cancellation is not None:
            cancellation.raise_if_cancelled("Quality checks aborted")

        logger.info(f"  Quality check: {check.name} ($ {check.command})")
        try:
            result = await run_check(check, working_dir, timeout, cancellation)
        except OSError as e:
            result = QualityGateResult(name=check.name, status="fail", output=str(e))

        results.append(result)
        if result.status == "fail":
            logger.warning(f"  Quality check failed: {check.name}")
            failed = True

    return QualityCheckOutcome(passed=not failed, results=results)


def skipped_outcome(checks: list[QualityCheck]) -> QualityCheckOutcome:
    """Outcome for features that opt out of automated testing."""
    return QualityCheckOutcome(
        passed=True,
        results=[QualityGateResult(name=c.name, status="skipped") for c in checks],
    )
