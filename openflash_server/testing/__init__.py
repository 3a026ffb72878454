"""Test-mode helpers that stand in for real programmer hardware."""

from openflash_server.testing.simulated import SimulatedExecutor

__all__ = ["SimulatedExecutor"]
