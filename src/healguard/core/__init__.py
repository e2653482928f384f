"""HealGuard core components."""

from healguard.core.alerts import AlertDispatcher
from healguard.core.audit import AuditLogger, AuditOutcome
from healguard.core.governor import GovernanceOutcome, Governor
from healguard.core.persistence import AuditPersistence
from healguard.core.proposals import ProposeWorkflow
from healguard.core.rate_limiter import RateLimiter
from healguard.core.safety import SafetyDecision, SafetyValidator
from healguard.core.sandbox import SandboxEnvironment, SandboxReport
from healguard.core.versions import VersionManifest

__all__ = [
    "AlertDispatcher",
    "AuditLogger",
    "AuditOutcome",
    "AuditPersistence",
    "GovernanceOutcome",
    "Governor",
    "ProposeWorkflow",
    "RateLimiter",
    "SafetyDecision",
    "SafetyValidator",
    "SandboxEnvironment",
    "SandboxReport",
    "VersionManifest",
]
