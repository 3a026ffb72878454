"""Executors that carry out flash jobs on devices."""

from openflash_server.executors.base import FlashExecutor, ProgressCallback

__all__ = ["FlashExecutor", "ProgressCallback"]
