"""HealGuard command line interface."""
