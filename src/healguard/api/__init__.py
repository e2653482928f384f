"""HealGuard HTTP API."""
