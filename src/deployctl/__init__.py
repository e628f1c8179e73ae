"""deployctl - zero-downtime deployment orchestrator for single-host targets."""

__version__ = "0.3.0"
