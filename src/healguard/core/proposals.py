"""Code change proposal workflow.

Fixes that touch source never run directly. They become proposals that move
through draft -> proposed -> approved/rejected -> merged/closed, and are
merged only when approved and every externally run test suite passed.
Closing is the rollback: nothing lands before approval.
"""

from __future__ import annotations

import asyncio
import re
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from threading import Lock
from typing import TYPE_CHECKING, Generator

from loguru import logger

from healguard.core.suites import SuiteRunner
from healguard.errors import ProposalStateError
from healguard.integrations.vcs import VCSAdapter, VCSError
from healguard.models import (
    CodeChange,
    CodeChangeProposal,
    DetectedIssue,
    HealingAction,
    ProposalMetadata,
    ProposalStatus,
    ProposalsConfig,
    TestResult,
)

if TYPE_CHECKING:
    from healguard.db import Database

PENDING_STATES = {ProposalStatus.DRAFT, ProposalStatus.PROPOSED, ProposalStatus.APPROVED}


def make_branch_name(prefix: str, category: str, now: float | None = None) -> str:
    """Branch for a proposal: <prefix><category-slug>-<millis>."""
    slug = re.sub(r"[^a-z0-9]+", "-", category.lower()).strip("-") or "fix"
    millis = int((now if now is not None else time.time()) * 1000)
    return f"{prefix}{slug}-{millis}"


def build_metadata(proposal: CodeChangeProposal, labels: list[str] | None = None) -> ProposalMetadata:
    """Title and markdown description for the change request."""
    issue = proposal.issue
    action = proposal.action
    summary = issue.signature.description or issue.category
    if len(summary) > 60:
        summary = summary[:57] + "..."

    lines = [
        "## Issue Detected",
        "",
        f"- **Category:** {issue.category}",
        f"- **Severity:** {issue.severity.value}",
        f"- **Component:** {issue.context.component}",
        f"- **Issue ID:** {issue.id}",
        "",
        issue.signature.description or "",
        "",
        "## Proposed Solution",
        "",
        f"**Strategy:** {action.strategy}",
        "",
        action.description or "",
        "",
    ]

    if action.steps:
        lines.append("### Steps")
        lines.extend(f"{i}. {s.action} -> {s.target}" for i, s in enumerate(action.steps, start=1))
        lines.append("")

    lines.append("## Changes")
    for change in proposal.changes:
        line = f"- `{change.file_path}` ({change.operation.value})"
        if change.reason:
            line += f": {change.reason}"
        lines.append(line)
    lines.append("")

    if action.rollback_plan:
        lines.append("## Rollback Plan")
        lines.extend(f"{i}. {s.action} -> {s.target}" for i, s in enumerate(action.rollback_plan, start=1))
        lines.append("")

    if issue.affected_resources:
        lines.append("## Affected Resources")
        lines.extend(f"- {r}" for r in issue.affected_resources)
        lines.append("")

    lines.extend([
        "## Review Checklist",
        "",
        "- [ ] Changes address the detected issue",
        "- [ ] No unrelated files are modified",
        "- [ ] All test suites pass",
        "- [ ] Rollback plan is viable",
        "",
        f"_Proposal {proposal.id}, generated by HealGuard. Merge requires approval and passing tests._",
    ])

    return ProposalMetadata(
        title=f"[HealGuard] Fix {issue.category}: {summary}",
        description="\n".join(lines),
        labels=list(labels or []) + [f"severity:{issue.severity.value}"],
        reviewers=list(proposal.reviewers),
    )


class ProposeWorkflow:
    """State machine over code change proposals."""

    def __init__(
        self,
        vcs: VCSAdapter,
        runner: SuiteRunner | None = None,
        db: "Database | None" = None,
        config: ProposalsConfig | None = None,
    ):
        self.vcs = vcs
        self.runner = runner
        self.db = db
        self.config = config or ProposalsConfig()

        self._lock = Lock()
        self._proposals: dict[str, CodeChangeProposal] = {}
        self._in_flight: set[str] = set()
        self._test_tasks: dict[str, asyncio.Task] = {}

        self._restore()

    def _restore(self) -> None:
        """Load proposals from the durable store."""
        if self.db is None:
            return
        try:
            payloads = self.db.get_proposals()
        except sqlite3.Error as e:
            logger.warning(f"Failed to restore proposals: {e}")
            return
        for payload in payloads:
            proposal = CodeChangeProposal.model_validate_json(payload)
            self._proposals[proposal.id] = proposal
        if payloads:
            logger.info(f"Restored {len(payloads)} proposals")

    def _persist(self, proposal: CodeChangeProposal) -> None:
        if self.db is None:
            return
        try:
            self.db.save_proposal(
                proposal.id,
                proposal.status.value,
                proposal.branch_name,
                proposal.reference_id,
                proposal.model_dump_json(),
            )
        except sqlite3.Error as e:
            logger.warning(f"Failed to persist proposal {proposal.id}: {e}")

    @contextmanager
    def _operation(self, proposal_id: str) -> Generator[CodeChangeProposal, None, None]:
        """Claim a proposal for one operation; concurrent operations are rejected."""
        with self._lock:
            proposal = self._proposals.get(proposal_id)
            if proposal is None:
                raise ProposalStateError(proposal_id, "not found")
            if proposal_id in self._in_flight:
                raise ProposalStateError(proposal_id, "another operation is in progress")
            self._in_flight.add(proposal_id)
        try:
            yield proposal
        finally:
            with self._lock:
                self._in_flight.discard(proposal_id)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def create_proposal(
        self,
        issue: DetectedIssue,
        action: HealingAction,
        changes: list[CodeChange],
    ) -> CodeChangeProposal:
        """Record intended changes as a draft. Source is never touched."""
        if not changes:
            raise ValueError("A proposal needs at least one change")

        proposal = CodeChangeProposal(
            issue=issue,
            action=action,
            changes=list(changes),
            branch_name=make_branch_name(self.config.branch_prefix, issue.category),
            reviewers=list(self.config.reviewers),
        )
        with self._lock:
            self._proposals[proposal.id] = proposal
        self._persist(proposal)

        logger.info(f"Created proposal {proposal.id} ({len(changes)} changes) on {proposal.branch_name}")
        return proposal.model_copy(deep=True)

    async def submit_proposal(self, proposal_id: str) -> CodeChangeProposal:
        """Register the change request and start the test run."""
        with self._operation(proposal_id) as proposal:
            if proposal.status != ProposalStatus.DRAFT:
                raise ProposalStateError(proposal_id, f"only drafts can be submitted (status is {proposal.status.value})")

            metadata = build_metadata(proposal, self.config.labels)
            try:
                ref = await self.vcs.create_change_request(
                    proposal.branch_name, self.config.base_branch, metadata, proposal.changes
                )
            except VCSError as e:
                logger.error(f"Failed to submit proposal {proposal_id}: {e}")
                raise ProposalStateError(proposal_id, f"change request failed: {e}") from e

            proposal.reference_id = ref.reference_id
            proposal.reference_url = ref.url
            proposal.status = ProposalStatus.PROPOSED
            proposal.submitted_at = datetime.now()
            self._persist(proposal)

            task = asyncio.create_task(self.run_tests(proposal_id))
            self._test_tasks[proposal_id] = task
            task.add_done_callback(lambda t: self._forget_task(proposal_id, t))
            logger.info(f"Submitted proposal {proposal_id} as {ref.reference_id}")
            return proposal.model_copy(deep=True)

    def _forget_task(self, proposal_id: str, task: asyncio.Task) -> None:
        if self._test_tasks.get(proposal_id) is task:
            del self._test_tasks[proposal_id]

    def _tests_running(self, proposal_id: str) -> bool:
        task = self._test_tasks.get(proposal_id)
        return task is not None and not task.done()

    async def run_tests(self, proposal_id: str) -> list[TestResult]:
        """Run the gating suites and store their results."""
        with self._lock:
            proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise ProposalStateError(proposal_id, "not found")

        if self.runner is None:
            logger.warning(f"No test runner configured, proposal {proposal_id} cannot be merged")
            return []

        try:
            results = await self.runner.run(proposal.model_copy(deep=True))
        except Exception as e:
            logger.error(f"Test run for proposal {proposal_id} failed: {e}")
            results = [TestResult(test_suite="runner", passed=False, failures=[str(e)])]

        # Results only land on proposals still under review
        with self._lock:
            if proposal.status not in (ProposalStatus.PROPOSED, ProposalStatus.APPROVED):
                logger.warning(
                    f"Discarding test results for proposal {proposal_id}: it is {proposal.status.value}"
                )
                return results
            proposal.test_results = list(results)
        self._persist(proposal)

        passed = sum(1 for r in results if r.passed)
        logger.info(f"Proposal {proposal_id} tests: {passed}/{len(results)} suites passed")
        return results

    async def wait_for_tests(self, proposal_id: str) -> list[TestResult]:
        """Wait for the test run started by submit_proposal."""
        task = self._test_tasks.get(proposal_id)
        if task is not None:
            # asyncio.wait does not raise if the run was cancelled by close_proposal
            await asyncio.wait([task])
        proposal = self.get_proposal(proposal_id)
        return proposal.test_results if proposal else []

    def approve_proposal(self, proposal_id: str, approved_by: str) -> CodeChangeProposal:
        with self._operation(proposal_id) as proposal:
            if proposal.status not in (ProposalStatus.PROPOSED, ProposalStatus.APPROVED):
                raise ProposalStateError(proposal_id, f"cannot approve a {proposal.status.value} proposal")
            if approved_by not in proposal.approved_by:
                proposal.approved_by.append(approved_by)
            proposal.status = ProposalStatus.APPROVED
            self._persist(proposal)
            logger.info(f"Proposal {proposal_id} approved by {approved_by}")
            return proposal.model_copy(deep=True)

    def reject_proposal(self, proposal_id: str, rejected_by: str, reason: str) -> CodeChangeProposal:
        if not reason or not reason.strip():
            raise ProposalStateError(proposal_id, "a rejection reason is required")

        with self._operation(proposal_id) as proposal:
            if proposal.status not in (ProposalStatus.PROPOSED, ProposalStatus.APPROVED):
                raise ProposalStateError(proposal_id, f"cannot reject a {proposal.status.value} proposal")
            proposal.rejected_by.append(rejected_by)
            proposal.rejection_reasons.append(reason)
            proposal.status = ProposalStatus.REJECTED
            self._persist(proposal)
            logger.info(f"Proposal {proposal_id} rejected by {rejected_by}: {reason}")
            return proposal.model_copy(deep=True)

    async def merge_proposal(self, proposal_id: str) -> CodeChangeProposal:
        """Merge an approved proposal whose suites all passed."""
        with self._operation(proposal_id) as proposal:
            if proposal.status != ProposalStatus.APPROVED:
                raise ProposalStateError(
                    proposal_id, f"must be approved before merging (status is {proposal.status.value})"
                )
            if self._tests_running(proposal_id):
                raise ProposalStateError(proposal_id, "test suites are still running")
            if not proposal.test_results:
                raise ProposalStateError(proposal_id, "no test results recorded")
            failing = [r.test_suite for r in proposal.test_results if not r.passed]
            if failing:
                raise ProposalStateError(proposal_id, f"failing test suites: {', '.join(failing)}")
            if not proposal.reference_id:
                raise ProposalStateError(proposal_id, "no change request registered")

            try:
                await self.vcs.merge(proposal.reference_id)
            except VCSError as e:
                logger.error(f"Failed to merge proposal {proposal_id}: {e}")
                raise ProposalStateError(proposal_id, f"merge failed: {e}") from e

            proposal.status = ProposalStatus.MERGED
            proposal.merged_at = datetime.now()
            self._persist(proposal)
            logger.info(f"Merged proposal {proposal_id}")

            try:
                await self.vcs.delete_branch(proposal.branch_name)
            except VCSError as e:
                logger.warning(f"Could not delete branch {proposal.branch_name}: {e}")

            return proposal.model_copy(deep=True)

    async def close_proposal(self, proposal_id: str, reason: str = "") -> CodeChangeProposal:
        """Close a non-terminal proposal and clean up its VCS state."""
        with self._operation(proposal_id) as proposal:
            if proposal.is_terminal:
                raise ProposalStateError(proposal_id, f"already {proposal.status.value}")

            task = self._test_tasks.pop(proposal_id, None)
            if task is not None and not task.done():
                task.cancel()

            if proposal.reference_id:
                try:
                    await self.vcs.close(proposal.reference_id)
                except VCSError as e:
                    logger.warning(f"Could not close change request {proposal.reference_id}: {e}")
                try:
                    await self.vcs.delete_branch(proposal.branch_name)
                except VCSError as e:
                    logger.warning(f"Could not delete branch {proposal.branch_name}: {e}")

            proposal.status = ProposalStatus.CLOSED
            proposal.closed_at = datetime.now()
            proposal.close_reason = reason or None
            self._persist(proposal)
            logger.info(f"Closed proposal {proposal_id}" + (f": {reason}" if reason else ""))
            return proposal.model_copy(deep=True)

    async def sync_proposal(self, proposal_id: str) -> CodeChangeProposal:
        """Refresh a submitted proposal from its change request."""
        with self._operation(proposal_id) as proposal:
            if not proposal.reference_id:
                raise ProposalStateError(proposal_id, "not submitted")
            if proposal.is_terminal:
                return proposal.model_copy(deep=True)

            try:
                status = await self.vcs.get_status(proposal.reference_id)
            except VCSError as e:
                raise ProposalStateError(proposal_id, f"status lookup failed: {e}") from e

            if self._tests_running(proposal_id):
                logger.debug(f"Proposal {proposal_id} test run in progress, keeping its results")
            elif status.checks_complete:
                proposal.test_results = list(status.checks)
            elif status.pending_checks:
                logger.debug(f"Proposal {proposal_id} checks still running: {', '.join(status.pending_checks)}")

            if status.merged:
                if proposal.status == ProposalStatus.APPROVED and proposal.all_tests_passed:
                    proposal.status = ProposalStatus.MERGED
                    proposal.merged_at = datetime.now()
                else:
                    logger.warning(
                        f"Change request {proposal.reference_id} was merged outside the workflow "
                        f"while proposal {proposal_id} is {proposal.status.value}"
                    )
            elif status.state == "closed":
                proposal.status = ProposalStatus.CLOSED
                proposal.closed_at = datetime.now()
                proposal.close_reason = "Closed in version control"

            self._persist(proposal)
            return proposal.model_copy(deep=True)

    # ========================================================================
    # Queries
    # ========================================================================

    def get_proposal(self, proposal_id: str) -> CodeChangeProposal | None:
        with self._lock:
            proposal = self._proposals.get(proposal_id)
            return proposal.model_copy(deep=True) if proposal else None

    def list_proposals(self, status: ProposalStatus | None = None) -> list[CodeChangeProposal]:
        with self._lock:
            proposals = [p.model_copy(deep=True) for p in self._proposals.values()]
        if status:
            proposals = [p for p in proposals if p.status == status]
        return sorted(proposals, key=lambda p: p.created_at)

    def get_pending_proposals(self) -> list[CodeChangeProposal]:
        return [p for p in self.list_proposals() if p.status in PENDING_STATES]

    async def aclose(self) -> None:
        """Cancel outstanding test runs."""
        for task in self._test_tasks.values():
            if not task.done():
                task.cancel()
        self._test_tasks.clear()
