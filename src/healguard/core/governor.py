"""Governor: runs a candidate remediation through the governance pipeline.

Policy check, throttle, dry run, execution by the caller, audit, and
escalation. Code-level fixes are never executed; they become proposals.
This module is also the composition root that builds every service from
a GovernanceConfig.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from healguard.config import DEFAULT_DB_FILE
from healguard.core.alerts import AlertDispatcher
from healguard.core.audit import AuditLogger, AuditOutcome
from healguard.core.persistence import AuditPersistence
from healguard.core.proposals import ProposeWorkflow
from healguard.core.rate_limiter import RateLimiter
from healguard.core.safety import SafetyDecision, SafetyValidator
from healguard.core.sandbox import SandboxEnvironment, SandboxReport
from healguard.core.suites import CommandSuiteRunner, SuiteRunner, VCSChecksRunner
from healguard.core.versions import VersionManifest
from healguard.db import Database
from healguard.errors import ExecutionFailed, ProposalStateError, StepRejected
from healguard.integrations.github import GitHubAdapter
from healguard.integrations.vcs import LocalVCSAdapter, VCSAdapter
from healguard.models import (
    AuditLogEntry,
    CodeChange,
    CodeChangeProposal,
    DetectedIssue,
    Disposition,
    GovernanceConfig,
    HealingAction,
    HealingResult,
    ReviewTicket,
)

# Performs the real remediation; supplied by the host application
Executor = Callable[[HealingAction, DetectedIssue], Awaitable[HealingResult]]


@dataclass
class GovernanceOutcome:
    """Everything that happened to one candidate action."""

    disposition: Disposition
    reason: str | None = None
    decision: SafetyDecision | None = None
    sandbox: SandboxReport | None = None
    result: HealingResult | None = None
    entry: AuditLogEntry | None = None
    ticket: ReviewTicket | None = None
    proposal: CodeChangeProposal | None = None
    retry_after: float | None = None
    alerts_delivered: int = 0

    def to_dict(self) -> dict:
        return {
            "disposition": self.disposition.value,
            "reason": self.reason,
            "decision": self.decision.to_dict() if self.decision else None,
            "sandbox": self.sandbox.to_dict() if self.sandbox else None,
            "result": self.result.model_dump(mode="json") if self.result else None,
            "audit_log_id": self.entry.id if self.entry else None,
            "ticket_id": self.ticket.id if self.ticket else None,
            "proposal_id": self.proposal.id if self.proposal else None,
            "retry_after": self.retry_after,
            "alerts_delivered": self.alerts_delivered,
        }


def _failed_result(action: HealingAction, description: str, steps_completed: int = 0) -> HealingResult:
    return HealingResult(
        success=False,
        steps_completed=steps_completed,
        total_steps=len(action.steps),
        outcome_description=description,
    )


class Governor:
    """Governs autonomous remediation for one host application."""

    def __init__(
        self,
        validator: SafetyValidator,
        rate_limiter: RateLimiter,
        sandbox: SandboxEnvironment,
        audit: AuditLogger,
        proposals: ProposeWorkflow,
        dispatcher: AlertDispatcher | None = None,
        config: GovernanceConfig | None = None,
    ):
        self.validator = validator
        self.rate_limiter = rate_limiter
        self.sandbox = sandbox
        self.audit = audit
        self.proposals = proposals
        self.dispatcher = dispatcher
        self.config = config or GovernanceConfig()

    @classmethod
    def from_config(cls, config: GovernanceConfig, db: Database | None = None) -> "Governor":
        """Build every service from configuration."""
        db = db or Database(config.database or DEFAULT_DB_FILE)

        validator = SafetyValidator()
        versions = VersionManifest.from_config(config.versions)
        persistence = AuditPersistence(db, set(config.policy.critical_categories), config.alerts)

        vcs: VCSAdapter
        if config.proposals.github.enabled:
            vcs = GitHubAdapter.from_config(config.proposals.github)
        else:
            vcs = LocalVCSAdapter()

        runner: SuiteRunner | None = None
        if config.proposals.test_commands:
            runner = CommandSuiteRunner(
                config.proposals.test_commands,
                cwd=config.proposals.workdir,
                timeout_seconds=config.proposals.test_timeout_seconds,
            )
        elif config.proposals.github.enabled:
            runner = VCSChecksRunner(vcs, timeout_seconds=config.proposals.test_timeout_seconds)

        return cls(
            validator=validator,
            rate_limiter=RateLimiter(config.rate_limit.max_actions, config.rate_limit.window_seconds),
            sandbox=SandboxEnvironment(validator, config.execution.sandbox_timeout_seconds),
            audit=AuditLogger(
                versions,
                persistence,
                actor=config.actor,
                environment=config.environment,
                buffer_size=config.audit_buffer_size,
            ),
            proposals=ProposeWorkflow(vcs, runner, db, config.proposals),
            dispatcher=AlertDispatcher(
                config.alerts.channels,
                db,
                max_delivery_attempts=config.alerts.max_delivery_attempts,
            ),
            config=config,
        )

    # ========================================================================
    # Pipeline
    # ========================================================================

    async def evaluate(self, issue: DetectedIssue, action: HealingAction) -> GovernanceOutcome:
        """Dry run the policy and sandbox without recording anything."""
        decision = self.validator.can_execute_autonomously(action, issue)
        if not decision.allowed:
            return GovernanceOutcome(disposition=Disposition.BLOCKED, reason=decision.reason, decision=decision)

        if self.rate_limiter.is_rate_limited(action.strategy):
            return GovernanceOutcome(
                disposition=Disposition.RATE_LIMITED,
                reason=f"Rate limit exceeded for {action.strategy}",
                decision=decision,
                retry_after=self.rate_limiter.retry_after(action.strategy),
            )

        report = await self.sandbox.test_fix(action, issue)
        if not report.success:
            return GovernanceOutcome(
                disposition=Disposition.SANDBOX_REJECTED,
                reason=f"Sandbox test failed: {', '.join(report.errors)}",
                decision=decision,
                sandbox=report,
            )

        return GovernanceOutcome(disposition=Disposition.EXECUTED, reason=decision.reason, decision=decision, sandbox=report)

    async def handle_issue(
        self,
        issue: DetectedIssue,
        action: HealingAction,
        executor: Executor,
        changes: list[CodeChange] | None = None,
    ) -> GovernanceOutcome:
        """Govern one candidate action from policy check to escalation."""
        policy = self.validator.policy_for(action.strategy)
        if policy.code_level and changes:
            return await self._propose(issue, action, changes)

        decision = self.validator.can_execute_autonomously(action, issue)
        if not decision.allowed:
            logged = self._block(issue, action, decision.reason)
            return await self._finish(
                logged,
                GovernanceOutcome(disposition=Disposition.BLOCKED, reason=decision.reason, decision=decision),
            )

        if self.rate_limiter.is_rate_limited(action.strategy):
            reason = f"Rate limit exceeded for {action.strategy}"
            return GovernanceOutcome(
                disposition=Disposition.RATE_LIMITED,
                reason=reason,
                decision=decision,
                retry_after=self.rate_limiter.retry_after(action.strategy),
            )

        report = await self.sandbox.test_fix(action, issue)
        if not report.success:
            reason = f"Sandbox test failed: {', '.join(report.errors)}"
            logged = self._block(issue, action, reason)
            return await self._finish(
                logged,
                GovernanceOutcome(
                    disposition=Disposition.SANDBOX_REJECTED, reason=reason, decision=decision, sandbox=report
                ),
            )

        self.rate_limiter.record_action(action.strategy)
        result = await self._execute(issue, action, executor)

        logged = self.audit.log_healing_action(issue, action, result)
        disposition = Disposition.EXECUTED if result.success else Disposition.FAILED
        if logged.duplicate:
            disposition = Disposition.DUPLICATE

        return await self._finish(
            logged,
            GovernanceOutcome(
                disposition=disposition,
                reason=result.outcome_description,
                decision=decision,
                sandbox=report,
                result=result,
            ),
        )

    def _block(self, issue: DetectedIssue, action: HealingAction, reason: str) -> AuditOutcome:
        logged = self.audit.log_blocked_action(issue, action, reason)
        self.sandbox.store_pending_fix(action.id, action, issue, reason)
        return logged

    async def _propose(
        self,
        issue: DetectedIssue,
        action: HealingAction,
        changes: list[CodeChange],
    ) -> GovernanceOutcome:
        """Route a code-level fix into the proposal workflow."""
        reason = f"Code-level fix for {issue.category} routed to proposal review"
        logged = self._block(issue, action, reason)

        proposal = self.proposals.create_proposal(issue, action, changes)
        if self.config.proposals.auto_submit:
            try:
                proposal = await self.proposals.submit_proposal(proposal.id)
            except ProposalStateError as e:
                logger.warning(f"Proposal {proposal.id} left as draft: {e}")

        return await self._finish(
            logged,
            GovernanceOutcome(disposition=Disposition.PROPOSED, reason=reason, proposal=proposal),
        )

    async def _execute(self, issue: DetectedIssue, action: HealingAction, executor: Executor) -> HealingResult:
        """Run the caller's executor under the step deny-list and time ceiling."""
        timeout = self.config.execution.timeout_seconds
        started = time.monotonic()

        try:
            for step in action.steps:
                self.validator.ensure_step(step)
            try:
                result = await asyncio.wait_for(executor(action, issue), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise ExecutionFailed(f"Execution timed out after {timeout:.0f}s", timed_out=True) from e
        except StepRejected as e:
            logger.error(f"Execution of {action.id} refused: {e}")
            return _failed_result(action, str(e))
        except ExecutionFailed as e:
            logger.error(f"Execution of {action.strategy} ({action.id}) failed: {e.reason}")
            return _failed_result(action, e.reason)
        except Exception as e:
            logger.error(f"Execution of {action.strategy} ({action.id}) raised: {e}")
            return _failed_result(action, f"Execution error: {e}")

        if result.metrics.time_to_heal == 0:
            result = result.model_copy(
                update={"metrics": result.metrics.model_copy(update={"time_to_heal": time.monotonic() - started})}
            )
        if not result.success:
            logger.error(f"Execution of {action.strategy} ({action.id}) failed: {result.outcome_description}")
        return result

    async def _finish(self, logged: AuditOutcome, outcome: GovernanceOutcome) -> GovernanceOutcome:
        outcome.entry = logged.entry
        outcome.ticket = logged.ticket
        if self.dispatcher is not None:
            outcome.alerts_delivered = await self.dispatcher.dispatch_pending()
        return outcome

    # ========================================================================
    # Reviewer actions
    # ========================================================================

    def approve_ticket(self, ticket_id: str, reviewed_by: str, notes: str | None = None) -> ReviewTicket:
        ticket = self.audit.approve_ticket(ticket_id, reviewed_by, notes)
        self.sandbox.release_pending_fix(ticket.action_id)
        return ticket

    def reject_ticket(self, ticket_id: str, reviewed_by: str, notes: str | None = None) -> ReviewTicket:
        ticket = self.audit.reject_ticket(ticket_id, reviewed_by, notes)
        self.sandbox.release_pending_fix(ticket.action_id)
        return ticket

    async def close(self) -> None:
        await self.proposals.aclose()
        await self.proposals.vcs.aclose()
        if self.dispatcher is not None:
            await self.dispatcher.close()
