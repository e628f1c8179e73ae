"""Shared building blocks for the CLI and the deploy engine."""
