"""Read-after-write confirmation polling."""

from requestgov.consistency.registry import (
    ConfirmationResult,
    ConsistencyConfig,
    ConsistencyRegistry,
    fingerprint,
    poll_delay_ms,
)

__all__ = [
    "ConfirmationResult",
    "ConsistencyConfig",
    "ConsistencyRegistry",
    "fingerprint",
    "poll_delay_ms",
]
