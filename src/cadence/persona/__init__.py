"""Persona lifecycle: state evolution and seasons."""

from .evolution import NaturalEvolver, StateEvolver
from .seasons import SeasonCheck, SeasonManager

__all__ = ["NaturalEvolver", "SeasonCheck", "SeasonManager", "StateEvolver"]
