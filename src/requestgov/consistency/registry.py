"""
Read-after-write confirmation for an eventually consistent API.

A write can succeed before the new record shows up in list reads.
``ConsistencyRegistry.confirm`` polls the list with exponential backoff
until a record matches, and reports a timeout as a result rather than an
error: "not visible yet" is not the same as "does not exist".

The registry also remembers which entities the run expects to exist, so
later checks can tell an expected-but-missing record from a stray one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Hashable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import aiohttp

from requestgov.governance.backoff import RateLimitSignal
from requestgov.transport.types import RemoteItem, is_success, parse_items

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from requestgov.transport.types import ResponseLike

logger = logging.getLogger(__name__)


def poll_delay_ms(attempt: int, base_delay_ms: int) -> int:
    """Delay before poll ``attempt`` (zero-based): none first, then ``base * 2**(attempt-1)``."""
    if attempt <= 0:
        return 0
    return base_delay_ms * (2 ** (attempt - 1))


def fingerprint(match_field: str, match_value: Any) -> str:
    return f"{match_field}:{match_value}"


@dataclass
class ConsistencyConfig:
    """Polling defaults."""

    max_attempts: int = 4
    base_delay_ms: int = 500

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")


@dataclass
class ConfirmationResult:
    """Outcome of one confirmation poll."""

    item: RemoteItem | None
    attempts: int
    waited_ms: int
    match_field: str
    match_value: Any

    @property
    def found(self) -> bool:
        return self.item is not None

    @property
    def timed_out(self) -> bool:
        return self.item is None


class ConsistencyRegistry:
    """
    Confirmation polling plus a cache of confirmed and expected entities.

    Usage:
        registry = ConsistencyRegistry()
        result = await registry.confirm(reader, "name", "Home", context="create-item")
        if result.timed_out:
            ...  # not visible yet; do not treat as missing
    """

    def __init__(
        self,
        config: ConsistencyConfig | None = None,
        *,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._config = config or ConsistencyConfig()
        self._sleep_fn = sleep_fn or asyncio.sleep
        self._confirmed: dict[str, RemoteItem] = {}
        self._expected: dict[Hashable, set[str]] = {}

    async def _read(
        self, reader: Callable[[], Awaitable[ResponseLike]], attempt: int
    ) -> list[RemoteItem] | None:
        try:
            response = await reader()
        except (aiohttp.ClientError, TimeoutError, RateLimitSignal) as e:
            logger.warning(
                "Confirmation list call failed",
                extra={"attempt": attempt + 1, "error": type(e).__name__},
            )
            return None
        if not is_success(response.status):
            logger.warning(
                "Confirmation list call rejected",
                extra={"attempt": attempt + 1, "status": response.status},
            )
            return None
        try:
            return parse_items(response.body)
        except ValueError:
            logger.warning("Invalid list response during confirmation", extra={"attempt": attempt + 1})
            return None

    async def confirm(
        self,
        reader: Callable[[], Awaitable[ResponseLike]],
        match_field: str,
        match_value: Any,
        *,
        max_attempts: int | None = None,
        base_delay_ms: int | None = None,
        context: str = "",
    ) -> ConfirmationResult:
        """
        Poll the list until a record has ``match_field == match_value``.

        Args:
            reader: Lists the collection (one remote call).
            match_field: Field to match on.
            match_value: Expected value; the first matching record wins.
            max_attempts: Poll count (default from config).
            base_delay_ms: Backoff base (default from config).
            context: Caller context for logs.

        Returns:
            ConfirmationResult; ``timed_out`` when no attempt saw the record.
        """
        attempts = max_attempts if max_attempts is not None else self._config.max_attempts
        base = base_delay_ms if base_delay_ms is not None else self._config.base_delay_ms
        waited_ms = 0

        for attempt in range(attempts):
            delay_ms = poll_delay_ms(attempt, base)
            if delay_ms > 0:
                await self._sleep_fn(delay_ms / 1000)
                waited_ms += delay_ms

            items = await self._read(reader, attempt)
            if items is None:
                continue
            match = next((item for item in items if item.matches(match_field, match_value)), None)
            if match is not None:
                self._confirmed[fingerprint(match_field, match_value)] = match
                if attempt > 0:
                    logger.info(
                        "Entity confirmed after polling",
                        extra={"attempt": attempt + 1, "waited_ms": waited_ms, "context": context},
                    )
                return ConfirmationResult(match, attempt + 1, waited_ms, match_field, match_value)

        logger.warning(
            "Entity not visible after polling",
            extra={
                "field": match_field,
                "attempts": attempts,
                "waited_ms": waited_ms,
                "context": context,
            },
        )
        return ConfirmationResult(None, attempts, waited_ms, match_field, match_value)

    # --- confirmed-entity cache ---------------------------------------------

    def get_cached(self, key: str) -> RemoteItem | None:
        return self._confirmed.get(key)

    def mark_deleted(self, key: str) -> None:
        self._confirmed.pop(key, None)

    # --- expected existence -------------------------------------------------

    def register(self, kind: Hashable, entity_id: Any) -> None:
        """Note that ``entity_id`` of ``kind`` is expected to exist."""
        self._expected.setdefault(kind, set()).add(str(entity_id))
        logger.debug("Registered expected entity", extra={"kind": str(kind), "entity_id": str(entity_id)})

    def should_exist(self, kind: Hashable, entity_id: Any) -> bool:
        return str(entity_id) in self._expected.get(kind, set())

    def unregister(self, kind: Hashable, entity_id: Any) -> None:
        self._expected.get(kind, set()).discard(str(entity_id))

    def clear(self) -> None:
        """Forget every expectation and every cached confirmation."""
        self._expected.clear()
        self._confirmed.clear()
