"""API endpoints."""

from openflash_server.api import devices, dumps, health, jobs, metrics, server

__all__ = [
    "devices",
    "dumps",
    "health",
    "jobs",
    "metrics",
    "server",
]
