"""HealGuard - governance core for autonomous remediation."""

__version__ = "0.1.0"
