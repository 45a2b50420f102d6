"""Shared helpers: logging, configuration, errors, concurrency and filesystem."""
