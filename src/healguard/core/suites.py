"""Test suite runners for code change proposals.

Tests run outside this process: either as local commands checked out on
the proposal branch, or as CI checks reported by the VCS host.
"""

from __future__ import annotations

import asyncio
import shlex
import time
from abc import ABC, abstractmethod
from pathlib import Path

from loguru import logger

from healguard.integrations.vcs import VCSAdapter
from healguard.models import CodeChangeProposal, TestResult

# Failure output kept per suite
MAX_FAILURE_CHARS = 2000


class SuiteRunner(ABC):
    """Runs the test suites gating a proposal."""

    @abstractmethod
    async def run(self, proposal: CodeChangeProposal) -> list[TestResult]:
        ...


class CommandSuiteRunner(SuiteRunner):
    """Runs each configured suite as a subprocess."""

    def __init__(
        self,
        commands: dict[str, str],
        cwd: Path | None = None,
        timeout_seconds: float = 600.0,
    ):
        self.commands = commands
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds

    async def _run_suite(self, name: str, command: str, proposal: CodeChangeProposal) -> TestResult:
        started = time.monotonic()
        args = shlex.split(command.format(branch=proposal.branch_name))

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(self.cwd) if self.cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.error(f"Test suite '{name}' could not start: {e}")
            return TestResult(test_suite=name, passed=False, failures=[f"Could not start: {e}"])

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error(f"Test suite '{name}' timed out after {self.timeout_seconds:.0f}s")
            return TestResult(
                test_suite=name,
                passed=False,
                duration_ms=(time.monotonic() - started) * 1000,
                failures=[f"Timed out after {self.timeout_seconds:.0f}s"],
            )

        duration_ms = (time.monotonic() - started) * 1000
        passed = proc.returncode == 0
        failures = []
        if not passed:
            output = stdout.decode(errors="replace")[-MAX_FAILURE_CHARS:]
            failures.append(f"Exit code {proc.returncode}: {output.strip()}")

        logger.info(f"Test suite '{name}' {'passed' if passed else 'failed'} in {duration_ms:.0f}ms")
        return TestResult(test_suite=name, passed=passed, duration_ms=duration_ms, failures=failures)

    async def run(self, proposal: CodeChangeProposal) -> list[TestResult]:
        results = []
        for name, command in self.commands.items():
            results.append(await self._run_suite(name, command, proposal))
        return results


class VCSChecksRunner(SuiteRunner):
    """Waits for CI checks on the change request to complete."""

    def __init__(self, vcs: VCSAdapter, poll_interval: float = 30.0, timeout_seconds: float = 1800.0):
        self.vcs = vcs
        self.poll_interval = poll_interval
        self.timeout_seconds = timeout_seconds

    async def run(self, proposal: CodeChangeProposal) -> list[TestResult]:
        if not proposal.reference_id:
            return []

        deadline = time.monotonic() + self.timeout_seconds
        while True:
            status = await self.vcs.get_status(proposal.reference_id)
            if status.checks_complete:
                return status.checks
            if time.monotonic() >= deadline:
                break
            await asyncio.sleep(self.poll_interval)

        if not status.checks and not status.pending_checks:
            logger.warning(f"No checks reported for {proposal.reference_id} within {self.timeout_seconds:.0f}s")
            return [TestResult(test_suite="ci", passed=False, failures=["No checks reported before timeout"])]

        logger.warning(
            f"Checks still running on {proposal.reference_id} after {self.timeout_seconds:.0f}s: "
            f"{', '.join(status.pending_checks)}"
        )
        unfinished = [
            TestResult(test_suite=name, passed=False, failures=["Did not finish before timeout"])
            for name in status.pending_checks
        ]
        return list(status.checks) + unfinished
