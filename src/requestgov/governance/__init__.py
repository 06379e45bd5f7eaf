"""Request governance: shared pacing, throttle feedback and backoff primitives."""

from requestgov.governance.backoff import (
    DEFAULT_RATE_LIMIT_STATUSES,
    SERVER_ERROR_BACKOFF,
    THROTTLE_BACKOFF,
    BackoffConfig,
    BackoffState,
    PauseState,
    RateLimitSignal,
    RotationExhaustedError,
    SystemPause,
    compute_backoff_delay,
    handle_error_response,
)
from requestgov.governance.governor import (
    GovernorConfig,
    GovernorMetrics,
    GovernorTelemetry,
    RequestGovernor,
    RequestPriority,
)

__all__ = [
    "DEFAULT_RATE_LIMIT_STATUSES",
    "SERVER_ERROR_BACKOFF",
    "THROTTLE_BACKOFF",
    "BackoffConfig",
    "BackoffState",
    "GovernorConfig",
    "GovernorMetrics",
    "GovernorTelemetry",
    "PauseState",
    "RateLimitSignal",
    "RequestGovernor",
    "RequestPriority",
    "RotationExhaustedError",
    "SystemPause",
    "compute_backoff_delay",
    "handle_error_response",
]
