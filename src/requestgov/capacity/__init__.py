"""Capacity mirror of a per-identity item limit, with tiered reclamation."""

from requestgov.capacity.tracker import (
    CapacityConfig,
    CapacityOutcome,
    CapacityReport,
    CapacityState,
    CapacityTracker,
    ReconcileError,
)

__all__ = [
    "CapacityConfig",
    "CapacityOutcome",
    "CapacityReport",
    "CapacityState",
    "CapacityTracker",
    "ReconcileError",
]
