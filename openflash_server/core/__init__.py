"""Core infrastructure: configuration, logging, errors and metrics."""
