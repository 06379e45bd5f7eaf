"""
Run configuration.

``OrchestratorConfig`` composes every component config. It is built
directly in code or from ``REQUESTGOV_*`` environment variables, and it
refuses to target a protected production host outside CI.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

from requestgov.capacity.tracker import CapacityConfig
from requestgov.consistency.registry import ConsistencyConfig
from requestgov.credentials.pool import Credentials, PoolConfig
from requestgov.execution.resilient import RotationConfig
from requestgov.governance.governor import GovernorConfig
from requestgov.transport.http_client import EndpointConfig

ENV_PREFIX = "REQUESTGOV"

DEFAULT_PROTECTED_HOSTS = frozenset({"api.production.com"})


def _hostname(base_url: str) -> str:
    parts = urlsplit(base_url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError(f"Invalid base_url: {base_url!r} is not an http(s) URL")
    return parts.hostname


def _env_int(source: Mapping[str, str], name: str, default: int) -> int:
    raw = source.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class OrchestratorConfig:
    """Everything one run needs."""

    base_url: str
    environment: str = "local"
    primary: Credentials | None = None
    secondary: Credentials | None = None
    request_timeout_ms: int = 30000
    endpoints: EndpointConfig = field(default_factory=EndpointConfig)
    governor: GovernorConfig = field(default_factory=GovernorConfig)
    rotation: RotationConfig = field(default_factory=RotationConfig)
    capacity: CapacityConfig = field(default_factory=CapacityConfig)
    consistency: ConsistencyConfig = field(default_factory=ConsistencyConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    protected_hosts: frozenset[str] = DEFAULT_PROTECTED_HOSTS
    ledger_path: Path | None = None
    # Pause before the single retry of a create rejected at the item limit.
    capacity_retry_pause_ms: int = 1500

    def __post_init__(self) -> None:
        host = _hostname(self.base_url)
        # Exact hostname match: "api.production.com.example.org" is not protected.
        if host in self.protected_hosts and self.environment != "CI":
            raise ValueError(
                f"Refusing to run destructive operations against production host {host} "
                f"(environment: {self.environment})"
            )
        if self.request_timeout_ms <= 0:
            raise ValueError(f"request_timeout_ms must be > 0, got {self.request_timeout_ms}")
        if self.capacity_retry_pause_ms < 0:
            raise ValueError(
                f"capacity_retry_pause_ms must be >= 0, got {self.capacity_retry_pause_ms}"
            )

    @property
    def hostname(self) -> str:
        return _hostname(self.base_url)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> OrchestratorConfig:
        """
        Build a config from ``REQUESTGOV_*`` variables.

        Reads BASE_URL (required), ENVIRONMENT, PRIMARY_LOGIN/PASSWORD,
        SECONDARY_LOGIN/PASSWORD, MAX_CONCURRENT, MIN_DELAY_MS,
        REQUEST_TIMEOUT_MS and LEDGER_PATH.

        Raises:
            ValueError: A variable is missing or malformed, or the target
                is a protected host outside CI.
        """
        source = os.environ if env is None else env
        base_url = source.get(f"{ENV_PREFIX}_BASE_URL", "").strip()
        if not base_url:
            raise ValueError(f"{ENV_PREFIX}_BASE_URL is required")

        defaults = GovernorConfig()
        governor = GovernorConfig(
            max_concurrent=_env_int(source, f"{ENV_PREFIX}_MAX_CONCURRENT", defaults.max_concurrent),
            min_inter_request_delay_ms=_env_int(
                source, f"{ENV_PREFIX}_MIN_DELAY_MS", defaults.min_inter_request_delay_ms
            ),
        )
        ledger_raw = source.get(f"{ENV_PREFIX}_LEDGER_PATH", "").strip()

        return cls(
            base_url=base_url,
            environment=source.get(f"{ENV_PREFIX}_ENVIRONMENT", "local").strip() or "local",
            primary=Credentials.from_env(f"{ENV_PREFIX}_PRIMARY", source),
            secondary=Credentials.from_env(f"{ENV_PREFIX}_SECONDARY", source),
            request_timeout_ms=_env_int(source, f"{ENV_PREFIX}_REQUEST_TIMEOUT_MS", 30000),
            governor=governor,
            ledger_path=Path(ledger_raw) if ledger_raw else None,
        )
