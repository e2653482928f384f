"""Pydantic models for HealGuard configuration and governance records."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def new_id(prefix: str) -> str:
    """Generate a short unique identifier with a readable prefix."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class Severity(str, Enum):
    """Severity of a detected issue."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EventType(str, Enum):
    """Terminal disposition recorded by an audit entry."""

    HEALING_SUCCEEDED = "healing_succeeded"
    HEALING_FAILED = "healing_failed"
    HEALING_BLOCKED = "healing_blocked"


class TicketStatus(str, Enum):
    """Review ticket status."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"


class TicketPriority(str, Enum):
    """Review ticket priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ProposalStatus(str, Enum):
    """Lifecycle state of a code change proposal."""

    DRAFT = "draft"
    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"
    MERGED = "merged"
    CLOSED = "closed"


# Terminal proposal states never change again
TERMINAL_PROPOSAL_STATES = {ProposalStatus.MERGED, ProposalStatus.CLOSED}


class ChangeOperation(str, Enum):
    """Kind of file change carried by a proposal."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Disposition(str, Enum):
    """Outcome of a governed remediation attempt."""

    EXECUTED = "executed"
    FAILED = "failed"
    BLOCKED = "blocked"
    RATE_LIMITED = "rate_limited"
    SANDBOX_REJECTED = "sandbox_rejected"
    PROPOSED = "proposed"
    DUPLICATE = "duplicate"


# ============================================================================
# Issues and actions
# ============================================================================


class EstimatedImpact(BaseModel):
    """Impact estimate attached to an issue signature."""

    model_config = ConfigDict(frozen=True)

    data_integrity: bool = False
    user_facing: bool = False
    security: bool = False


class IssueSignature(BaseModel):
    """Classification of a detected issue."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    category: str
    description: str = ""
    estimated_impact: EstimatedImpact = Field(default_factory=EstimatedImpact)


class IssueContext(BaseModel):
    """Where the issue was observed."""

    model_config = ConfigDict(frozen=True)

    component: str = "unknown"
    user_id: str | None = None
    session_id: str | None = None
    environment: str | None = None


class DetectedIssue(BaseModel):
    """An automatically identified system problem."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("issue"))
    signature: IssueSignature
    severity: Severity = Severity.MEDIUM
    affected_resources: list[str] = Field(default_factory=list)
    context: IssueContext = Field(default_factory=IssueContext)
    detected_at: datetime = Field(default_factory=datetime.now)

    @property
    def category(self) -> str:
        return self.signature.category


class HealingStep(BaseModel):
    """A single operation of a remediation plan."""

    model_config = ConfigDict(frozen=True)

    action: str
    target: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


class HealingAction(BaseModel):
    """A candidate remediation plan composed of ordered steps."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("action"))
    issue_id: str | None = None
    strategy: str
    description: str = ""
    steps: list[HealingStep] = Field(default_factory=list)
    requires_approval: bool = False
    rollback_plan: list[HealingStep] = Field(default_factory=list)
    expected_outcome: str | None = None


class HealingMetrics(BaseModel):
    """Timing and blast-radius metrics for an execution attempt."""

    time_to_detect: float = 0.0
    time_to_heal: float = 0.0
    resources_affected: int = 0
    users_impacted: int = 0


class HealingResult(BaseModel):
    """Outcome of one execution attempt."""

    success: bool
    steps_completed: int = 0
    total_steps: int = 0
    outcome_description: str = ""
    metrics: HealingMetrics = Field(default_factory=HealingMetrics)
    lessons: list[str] = Field(default_factory=list)
    preventive_measures: list[str] = Field(default_factory=list)


# ============================================================================
# Audit records
# ============================================================================


class NarrativeRecord(BaseModel):
    """Structured description of what happened, before rendering."""

    model_config = ConfigDict(frozen=True)

    headline: str
    disposition: EventType
    issue_summary: str
    strategy: str
    severity: Severity
    category: str
    component: str
    steps: list[str] = Field(default_factory=list)
    outcome: str = ""
    block_reason: str | None = None
    steps_completed: int = 0
    total_steps: int = 0
    before_version: str | None = None
    after_version: str | None = None
    affected_resources: list[str] = Field(default_factory=list)
    lessons: list[str] = Field(default_factory=list)
    preventive_measures: list[str] = Field(default_factory=list)
    rollback_steps: list[str] = Field(default_factory=list)


class AuditLogEntry(BaseModel):
    """Append-only record of one executed or blocked action."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("audit"))
    timestamp: datetime = Field(default_factory=datetime.now)
    event_type: EventType
    issue_id: str
    action_id: str
    strategy: str
    severity: Severity
    category: str
    actor: str = "healguard"
    environment: str = "production"
    component: str = "unknown"
    user_id: str | None = None
    session_id: str | None = None
    success: bool | None = None
    block_reason: str | None = None
    steps_completed: int = 0
    total_steps: int = 0
    before_version: str | None = None
    after_version: str | None = None
    narrative: str = ""
    narrative_record: dict[str, Any] = Field(default_factory=dict)
    metrics: dict[str, Any] = Field(default_factory=dict)
    lessons: list[str] = Field(default_factory=list)
    preventive_measures: list[str] = Field(default_factory=list)
    affected_resources: list[str] = Field(default_factory=list)
    requires_review: bool = False


class ReviewTicket(BaseModel):
    """Human review request raised for an audit entry."""

    id: str = Field(default_factory=lambda: new_id("ticket"))
    audit_log_id: str
    issue_id: str
    action_id: str
    strategy: str
    title: str = ""
    reason: str = ""
    status: TicketStatus = TicketStatus.PENDING
    priority: TicketPriority = TicketPriority.LOW
    created_at: datetime = Field(default_factory=datetime.now)
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_notes: str | None = None
    escalated_at: datetime | None = None
    escalation_reason: str | None = None


class AuditFilters(BaseModel):
    """Filters for audit log queries."""

    issue_id: str | None = None
    strategy: str | None = None
    event_type: EventType | None = None
    severity: Severity | None = None
    since: datetime | None = None
    requires_review: bool | None = None
    limit: int = 100


# ============================================================================
# Proposals
# ============================================================================


class CodeChange(BaseModel):
    """An intended change to one source file."""

    file_path: str
    operation: ChangeOperation = ChangeOperation.UPDATE
    before: str | None = None
    after: str | None = None
    diff: str | None = None
    reason: str = ""


class TestResult(BaseModel):
    """Result of one externally run test suite."""

    __test__ = False

    test_suite: str
    passed: bool
    duration_ms: float = 0.0
    failures: list[str] = Field(default_factory=list)


class ProposalMetadata(BaseModel):
    """Title, description and routing for a change request."""

    title: str
    description: str
    labels: list[str] = Field(default_factory=list)
    assignees: list[str] = Field(default_factory=list)
    reviewers: list[str] = Field(default_factory=list)


class ChangeRequestRef(BaseModel):
    """Locator returned by a VCS adapter after registering a change request."""

    reference_id: str
    url: str | None = None


class ChangeRequestStatus(BaseModel):
    """Externally observed state of a change request."""

    reference_id: str
    state: str = "open"
    merged: bool = False
    checks: list[TestResult] = Field(default_factory=list)
    # Checks that have not finished yet
    pending_checks: list[str] = Field(default_factory=list)
    approvals: list[str] = Field(default_factory=list)

    @property
    def checks_complete(self) -> bool:
        return bool(self.checks) and not self.pending_checks


class CodeChangeProposal(BaseModel):
    """A governed, test-gated request to change source."""

    id: str = Field(default_factory=lambda: new_id("proposal"))
    created_at: datetime = Field(default_factory=datetime.now)
    issue: DetectedIssue
    action: HealingAction
    changes: list[CodeChange] = Field(default_factory=list)
    branch_name: str
    status: ProposalStatus = ProposalStatus.DRAFT
    reviewers: list[str] = Field(default_factory=list)
    approved_by: list[str] = Field(default_factory=list)
    rejected_by: list[str] = Field(default_factory=list)
    rejection_reasons: list[str] = Field(default_factory=list)
    reference_id: str | None = None
    reference_url: str | None = None
    test_results: list[TestResult] = Field(default_factory=list)
    submitted_at: datetime | None = None
    merged_at: datetime | None = None
    closed_at: datetime | None = None
    close_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PROPOSAL_STATES

    @property
    def all_tests_passed(self) -> bool:
        """True only when at least one suite ran and every suite passed."""
        return bool(self.test_results) and all(r.passed for r in self.test_results)


# ============================================================================
# Alerts
# ============================================================================


class ChannelResult(BaseModel):
    """Outcome of delivering a notification on one channel."""

    channel: str
    success: bool
    error: str | None = None
    message_id: str | None = None


class NotificationResult(BaseModel):
    """Aggregate outcome of a multi-channel notification."""

    alert_id: str
    success: bool
    results: dict[str, ChannelResult] = Field(default_factory=dict)
    sent_at: datetime = Field(default_factory=datetime.now)


class SecurityAlert(BaseModel):
    """Escalation record written for critical categories or severities."""

    id: str = Field(default_factory=lambda: new_id("alert"))
    issue_id: str
    action_id: str
    audit_log_id: str
    severity: Severity
    category: str
    title: str
    summary: str = ""
    channels: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    notification: NotificationResult | None = None


class AlertNotification(BaseModel):
    """A message to fan out across channels."""

    alert_id: str
    title: str
    body: str = ""
    priority: str = "normal"
    channels: list[str] = Field(default_factory=list)
    recipients: list[str] = Field(default_factory=list)


# ============================================================================
# Configuration
# ============================================================================


class RateLimitConfig(BaseModel):
    """Sliding-window throttle configuration."""

    max_actions: int = 3
    window_seconds: float = 60.0


class ExecutionConfig(BaseModel):
    """Wall-clock ceilings for execution and simulation."""

    timeout_seconds: float = 30.0
    sandbox_timeout_seconds: float = 30.0


class PolicyConfig(BaseModel):
    """Escalation policy knobs."""

    critical_categories: list[str] = Field(
        default_factory=lambda: [
            "security",
            "data_corruption",
            "authentication",
            "authorization",
            "data_breach",
        ]
    )


class VersionsConfig(BaseModel):
    """Known-good and currently deployed dependency versions."""

    release: str | None = None
    golden: dict[str, str] = Field(default_factory=dict)
    current: dict[str, str] = Field(default_factory=dict)


class ChannelConfig(BaseModel):
    """Configuration for one notification channel."""

    kind: str = "dashboard"  # direct, broadcast, dashboard
    enabled: bool = True
    url: str | None = None
    token: str | None = None
    recipients: list[str] = Field(default_factory=list)
    timeout_seconds: float = 10.0


class AlertsConfig(BaseModel):
    """Alert delivery configuration."""

    channels: dict[str, ChannelConfig] = Field(
        default_factory=lambda: {"dashboard": ChannelConfig(kind="dashboard")}
    )
    # Severity-derived routing uses these logical channel names
    primary: str = "email"
    secondary: str = "sms"
    dashboard: str = "dashboard"
    max_delivery_attempts: int = 5


class GitHubConfig(BaseModel):
    """GitHub change-request hosting."""

    enabled: bool = False
    owner: str | None = None
    repo: str | None = None
    token: str | None = None
    api_url: str = "https://api.github.com"


class ProposalsConfig(BaseModel):
    """Code change proposal workflow configuration."""

    base_branch: str = "main"
    branch_prefix: str = "healguard/"
    reviewers: list[str] = Field(default_factory=lambda: ["tech-lead", "security-team"])
    labels: list[str] = Field(default_factory=lambda: ["healguard", "automated-fix"])
    auto_submit: bool = True
    test_commands: dict[str, str] = Field(default_factory=dict)
    test_timeout_seconds: float = 600.0
    workdir: Path | None = None
    github: GitHubConfig = Field(default_factory=GitHubConfig)


class ApiAuthConfig(BaseModel):
    """API authentication configuration."""

    enabled: bool = False
    token: str | None = None


class ApiConfig(BaseModel):
    """Reviewer API configuration."""

    host: str = "127.0.0.1"
    port: int = 9877
    log_level: str = "INFO"
    auth: ApiAuthConfig = Field(default_factory=ApiAuthConfig)


class GovernanceConfig(BaseModel):
    """Main HealGuard configuration."""

    environment: str = "production"
    actor: str = "healguard"
    database: Path | None = None
    audit_buffer_size: int = 1000
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    versions: VersionsConfig = Field(default_factory=VersionsConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    proposals: ProposalsConfig = Field(default_factory=ProposalsConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
