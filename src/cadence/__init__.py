"""Cadence - autonomous persona conversation engine with timed replies and decaying memory."""

__version__ = "0.1.0"
