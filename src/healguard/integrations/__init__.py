"""External system adapters for HealGuard."""
