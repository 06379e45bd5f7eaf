"""
Credential pool: a primary and a secondary identity with rotation.

The pool authenticates both identities up front, keeps their tokens in a
TokenStore and exposes the single rotation primitive used everywhere else:
``switch_user`` for throttling and ``mark_exhausted`` for quota exhaustion.
Rotation never raises; a refused switch is logged and recorded so the
caller can decide what to do next.
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import aiohttp

from requestgov.governance.backoff import (
    DEFAULT_RATE_LIMIT_STATUSES,
    SERVER_ERROR_BACKOFF,
    THROTTLE_BACKOFF,
    BackoffConfig,
    BackoffState,
    compute_backoff_delay,
)
from requestgov.transport.types import (
    DEFAULT_TOKEN_PATH,
    extract_token,
    is_server_error,
    is_success,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from requestgov.tracking.ledger import ExecutionLedger
    from requestgov.transport.types import ResponseLike

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """No identity could be authenticated, or primary credentials are missing."""


class IdentitySlot(str, Enum):
    """Position of an identity in the pool."""

    PRIMARY = "primary"
    SECONDARY = "secondary"

    @property
    def other(self) -> IdentitySlot:
        return IdentitySlot.SECONDARY if self is IdentitySlot.PRIMARY else IdentitySlot.PRIMARY


@dataclass(frozen=True)
class Credentials:
    """Login pair for one identity. The password never appears in repr."""

    login: str
    password: str = field(repr=False)

    def __post_init__(self) -> None:
        if not self.login:
            raise ValueError("login must not be empty")
        if not self.password:
            raise ValueError("password must not be empty")

    @classmethod
    def from_env(cls, prefix: str, env: Mapping[str, str] | None = None) -> Credentials | None:
        """
        Read ``{prefix}_LOGIN`` and ``{prefix}_PASSWORD``.

        Returns:
            Credentials when both are set and non-empty, None otherwise.
        """
        source = os.environ if env is None else env
        login = source.get(f"{prefix}_LOGIN", "").strip()
        password = source.get(f"{prefix}_PASSWORD", "")
        if not login or not password:
            return None
        return cls(login=login, password=password)


@dataclass
class Identity:
    """Authentication and exhaustion state of one slot."""

    slot: IdentitySlot
    credentials: Credentials | None = None
    authenticated: bool = False
    exhausted: bool = False
    token_source: str | None = None  # "login" or "cached"

    @property
    def available(self) -> bool:
        return self.authenticated and not self.exhausted


class TokenStore:
    """Bearer tokens per slot plus the slot currently in use."""

    def __init__(self, tokens: Mapping[IdentitySlot, str] | None = None) -> None:
        self._tokens: dict[IdentitySlot, str] = dict(tokens or {})
        self._active = IdentitySlot.PRIMARY

    @property
    def active_slot(self) -> IdentitySlot:
        return self._active

    def set_active(self, slot: IdentitySlot) -> None:
        self._active = slot

    def set_token(self, slot: IdentitySlot, token: str) -> None:
        self._tokens[slot] = token

    def get_token(self, slot: IdentitySlot | None = None) -> str | None:
        return self._tokens.get(slot if slot is not None else self._active)

    def clear(self, slot: IdentitySlot | None = None) -> None:
        if slot is None:
            self._tokens.clear()
        else:
            self._tokens.pop(slot, None)


@dataclass(frozen=True)
class RotationEvent:
    """Audit record of one rotation request."""

    reason: str
    from_slot: IdentitySlot
    to_slot: IdentitySlot
    switched: bool
    context: str
    at_ms: int


@dataclass
class PoolConfig:
    """Authentication retry policy."""

    max_login_attempts: int = 5
    throttle_backoff: BackoffConfig = THROTTLE_BACKOFF
    server_error_backoff: BackoffConfig = SERVER_ERROR_BACKOFF
    token_path: tuple[str, ...] = DEFAULT_TOKEN_PATH
    rate_limit_statuses: frozenset[int] = DEFAULT_RATE_LIMIT_STATUSES

    def __post_init__(self) -> None:
        if self.max_login_attempts < 1:
            raise ValueError(f"max_login_attempts must be >= 1, got {self.max_login_attempts}")
        if not self.token_path:
            raise ValueError("token_path must not be empty")


class CredentialPool:
    """
    Two-identity pool with authentication retry and rotation.

    Usage:
        pool = CredentialPool(client.login, primary_creds, secondary_creds)
        await pool.initialize()
        token = pool.token
        pool.switch_user("rate limit", context="create-item")
    """

    def __init__(
        self,
        login: Callable[[Credentials], Awaitable[ResponseLike]],
        primary: Credentials | None,
        secondary: Credentials | None = None,
        *,
        config: PoolConfig | None = None,
        token_store: TokenStore | None = None,
        ledger: ExecutionLedger | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
        rng: random.Random | None = None,
        _time_fn: Callable[[], int] | None = None,
    ) -> None:
        """
        Initialize the pool.

        Args:
            login: Coroutine performing one login request for a credential pair.
            primary: Primary credentials; required by ``initialize``.
            secondary: Optional secondary credentials (single-identity mode without).
            config: Authentication retry policy.
            token_store: Shared token store; tokens already present are reused.
            ledger: Optional execution ledger for rotation events.
            sleep_fn: Async sleep used between login retries.
            rng: Seeded RNG for deterministic jitter.
        """
        self._login = login
        self._config = config or PoolConfig()
        self._tokens = token_store or TokenStore()
        self._ledger = ledger
        self._sleep_fn = sleep_fn or asyncio.sleep
        self._rng = rng
        self._time_fn = _time_fn
        self._identities: dict[IdentitySlot, Identity] = {
            IdentitySlot.PRIMARY: Identity(IdentitySlot.PRIMARY, primary),
            IdentitySlot.SECONDARY: Identity(IdentitySlot.SECONDARY, secondary),
        }
        self._rotation_log: list[RotationEvent] = []

    def _now_ms(self) -> int:
        if self._time_fn is not None:
            return self._time_fn()
        return int(time.time() * 1000)

    # --- authentication ----------------------------------------------------

    async def initialize(self) -> None:
        """
        Authenticate every configured identity.

        Raises:
            AuthenticationError: Primary credentials are missing or no
                identity could be authenticated.
        """
        primary = self._identities[IdentitySlot.PRIMARY]
        secondary = self._identities[IdentitySlot.SECONDARY]
        if primary.credentials is None:
            raise AuthenticationError("Missing primary credentials")

        primary_ok = await self._authenticate(primary)
        secondary_ok = False
        if secondary.credentials is not None:
            secondary_ok = await self._authenticate(secondary)
        else:
            logger.warning("No secondary credentials configured, running with a single identity")

        if not primary_ok and not secondary_ok:
            raise AuthenticationError("Authentication failed for every identity")

        if primary_ok:
            self._set_active(IdentitySlot.PRIMARY)
        else:
            self._set_active(IdentitySlot.SECONDARY)
            logger.warning("Primary identity failed to authenticate, using secondary only")

        if primary_ok and secondary.credentials is not None and not secondary_ok:
            logger.warning("Secondary identity failed to authenticate, rotation disabled")

        logger.info(
            "Credential pool initialized",
            extra={
                "authenticated": [s.value for s, i in self._identities.items() if i.authenticated],
                "active": self.active_slot.value,
            },
        )

    async def _backoff(self, config: BackoffConfig, attempt: int) -> int:
        delay_ms = compute_backoff_delay(config, BackoffState(attempt=attempt + 1), rng=self._rng)
        await self._sleep_fn(delay_ms / 1000)
        return delay_ms

    async def _authenticate(self, identity: Identity) -> bool:
        """
        Log one identity in, retrying throttled and failing logins.

        A token already in the store short-circuits the login. Throttling and
        server errors are retried with backoff; any other rejection, or a
        success without a token, fails immediately.

        Returns:
            True if the identity ends up authenticated.
        """
        slot = identity.slot
        if self._tokens.get_token(slot):
            identity.authenticated = True
            identity.token_source = "cached"
            logger.info("Using cached token", extra={"slot": slot.value})
            return True
        if identity.credentials is None:
            return False

        max_attempts = self._config.max_login_attempts
        for attempt in range(max_attempts):
            is_last = attempt == max_attempts - 1
            try:
                response = await self._login(identity.credentials)
            except (aiohttp.ClientError, TimeoutError) as e:
                logger.error(
                    "Login request failed",
                    extra={"slot": slot.value, "attempt": attempt + 1, "error": type(e).__name__},
                )
                if is_last:
                    break
                await self._backoff(self._config.server_error_backoff, attempt)
                continue

            status = response.status
            if status in self._config.rate_limit_statuses:
                if is_last:
                    break
                delay_ms = await self._backoff(self._config.throttle_backoff, attempt)
                logger.warning(
                    "Login throttled, retrying",
                    extra={"slot": slot.value, "attempt": attempt + 1, "delay_ms": delay_ms},
                )
                continue

            if not is_success(status):
                if is_server_error(status) and not is_last:
                    delay_ms = await self._backoff(self._config.server_error_backoff, attempt)
                    logger.warning(
                        "Login server error, retrying",
                        extra={"slot": slot.value, "status": status, "delay_ms": delay_ms},
                    )
                    continue
                logger.error("Login rejected", extra={"slot": slot.value, "status": status})
                return False

            token = extract_token(response.body, self._config.token_path)
            if token is None:
                logger.error(
                    "Login response has no access token",
                    extra={"slot": slot.value, "status": status},
                )
                return False

            self._tokens.set_token(slot, token)
            identity.authenticated = True
            identity.token_source = "login"
            logger.info("Identity authenticated", extra={"slot": slot.value, "attempt": attempt + 1})
            return True

        logger.error(
            "All login attempts exhausted",
            extra={"slot": slot.value, "attempts": max_attempts},
        )
        return False

    # --- rotation ----------------------------------------------------------

    def _set_active(self, slot: IdentitySlot) -> None:
        self._tokens.set_active(slot)

    def _record(self, context: str, event: RotationEvent, details: str) -> None:
        self._rotation_log.append(event)
        if self._ledger is not None and context:
            self._ledger.record_rate_limit(context, details)

    def can_switch_to(self, slot: IdentitySlot) -> bool:
        return self._identities[slot].available

    def switch_user(self, reason: str, context: str = "") -> bool:
        """
        Rotate to the other identity if it is authenticated and not exhausted.

        Returns:
            True if the active identity changed. A refused switch is logged
            and recorded, never raised.
        """
        current = self.active_slot
        target = current.other
        target_identity = self._identities[target]

        if target_identity.available:
            self._set_active(target)
            event = RotationEvent(reason, current, target, True, context, self._now_ms())
            self._record(context, event, f"Switched to {target.value} due to {reason}")
            logger.info(
                "Switched identity",
                extra={"from": current.value, "to": target.value, "reason": reason, "context": context},
            )
            return True

        why = "exhausted" if target_identity.authenticated else "not authenticated"
        event = RotationEvent(reason, current, target, False, context, self._now_ms())
        self._record(context, event, f"Cannot switch to {target.value} ({why}). Reason: {reason}")
        logger.warning(
            "Identity switch refused",
            extra={"target": target.value, "why": why, "reason": reason, "context": context},
        )
        return False

    def mark_exhausted(self, reason: str, context: str = "") -> bool:
        """
        Mark the active identity exhausted and try to move to the other one.

        Returns:
            True if a usable identity is now active.
        """
        current = self.active_slot
        self._identities[current].exhausted = True
        logger.warning(
            "Identity marked exhausted",
            extra={"slot": current.value, "reason": reason, "context": context},
        )

        target = current.other
        if self.can_switch_to(target):
            self._set_active(target)
            event = RotationEvent(reason, current, target, True, context, self._now_ms())
            self._record(context, event, f"Switched to {target.value} (exhaustion: {reason})")
            return True

        event = RotationEvent(reason, current, target, False, context, self._now_ms())
        self._record(context, event, "All identities exhausted. Cleanup required.")
        return False

    def reset_exhaustion(self) -> None:
        """Clear every exhaustion flag and return to the primary if it is usable."""
        for identity in self._identities.values():
            identity.exhausted = False
        if self._identities[IdentitySlot.PRIMARY].authenticated:
            self._set_active(IdentitySlot.PRIMARY)
        logger.info("Exhaustion state reset", extra={"active": self.active_slot.value})

    # --- accessors ---------------------------------------------------------

    @property
    def active_slot(self) -> IdentitySlot:
        return self._tokens.active_slot

    @property
    def active_identity(self) -> Identity:
        return self._identities[self.active_slot]

    @property
    def token(self) -> str | None:
        return self._tokens.get_token()

    @property
    def token_store(self) -> TokenStore:
        return self._tokens

    @property
    def rotation_log(self) -> list[RotationEvent]:
        return list(self._rotation_log)

    @property
    def rotation_count(self) -> int:
        return sum(1 for event in self._rotation_log if event.switched)

    def identity(self, slot: IdentitySlot) -> Identity:
        return self._identities[slot]

    def is_authenticated(self, slot: IdentitySlot) -> bool:
        return self._identities[slot].authenticated

    def has_any_authentication(self) -> bool:
        return any(identity.authenticated for identity in self._identities.values())

    def exhausted_count(self) -> int:
        return sum(1 for identity in self._identities.values() if identity.exhausted)

    def record_identity_for(self, context: str) -> None:
        """Note in the ledger which identity served ``context``."""
        if self._ledger is None:
            return
        identity = self.active_identity
        self._ledger.record_identity(context, identity.slot.value, identity.token_source or "unknown")
