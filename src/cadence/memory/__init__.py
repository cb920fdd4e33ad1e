"""Persona memory lifecycle: decay, consolidation, pruning and recall."""

from .store import MaintenanceReport, MemoryStore

__all__ = ["MaintenanceReport", "MemoryStore"]
