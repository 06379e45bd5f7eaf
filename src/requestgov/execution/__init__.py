"""Resilient execution with identity rotation and cooldown cycles."""

from requestgov.execution.resilient import (
    AttemptOutcome,
    ResilientExecutor,
    RotationConfig,
    RotationState,
    cooldown_delay_ms,
    next_state,
)

__all__ = [
    "AttemptOutcome",
    "ResilientExecutor",
    "RotationConfig",
    "RotationState",
    "cooldown_delay_ms",
    "next_state",
]
