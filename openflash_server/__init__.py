"""OpenFlash Server: device-fleet orchestration for flash programmers."""

__version__ = "2.0.0"
