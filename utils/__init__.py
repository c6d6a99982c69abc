"""Shared helpers: logging setup and request signing."""
