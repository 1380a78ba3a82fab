"""Shared utilities: logging and metrics."""
