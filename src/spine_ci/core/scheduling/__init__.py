"""Periodic scheduling primitives."""

from spine_ci.core.scheduling.periodic import PeriodicTask

__all__ = ["PeriodicTask"]
