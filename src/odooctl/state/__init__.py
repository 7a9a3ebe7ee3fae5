"""State management helpers for odooctl."""
from __future__ import annotations

from .registry import INSTANCES_FILE, StateRegistry, StateRegistryError

__all__ = ["INSTANCES_FILE", "StateRegistry", "StateRegistryError"]
