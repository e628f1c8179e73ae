"""CLI commands for deployctl."""
