"""
Execution ledger: per-context metadata about how each operation ran.

A context is whatever the caller uses to group work (a test id, a job id).
For each one the ledger records which identities served it, what rate-limit
events and cleanup actions happened, the governor's telemetry and the final
failure category. With a path configured, every change is written through
to disk immediately so a crashed run still leaves its evidence behind.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class GovernorStats(BaseModel):
    """Governor numbers captured at the end of an operation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    delay_ms: int
    pauses: int
    total_429s: int


class ExecutionMeta(BaseModel):
    """Everything recorded about one context."""

    model_config = ConfigDict(extra="forbid")

    identities: list[str] = Field(default_factory=list)
    token_source: str | None = None
    languages: list[str] = Field(default_factory=list)
    cleanup_actions: list[str] = Field(default_factory=list)
    rate_limit_events: list[str] = Field(default_factory=list)
    retry_history: list[str] = Field(default_factory=list)
    governor_stats: GovernorStats | None = None
    failure_category: str | None = None


class ExecutionLedger:
    """In-memory ledger with optional eager JSON persistence."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._entries: dict[str, ExecutionMeta] = {}
        self._loaded = False

    @property
    def path(self) -> Path | None:
        return self._path

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if self._path is None or not self._path.exists():
            return
        try:
            raw = orjson.loads(self._path.read_bytes())
            self._entries = {
                context: ExecutionMeta.model_validate(meta) for context, meta in raw.items()
            }
        except (OSError, orjson.JSONDecodeError, ValidationError, AttributeError) as e:
            # A corrupt ledger must not stop the run; start over.
            logger.error(
                "Failed to load execution ledger",
                extra={"path": str(self._path), "error": str(e)},
            )
            self._entries = {}

    def _persist(self) -> None:
        if self._path is None:
            return
        data = {context: meta.model_dump(mode="json") for context, meta in self._entries.items()}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_bytes(orjson.dumps(data, option=orjson.OPT_INDENT_2))
        except OSError as e:
            logger.error(
                "Failed to persist execution ledger",
                extra={"path": str(self._path), "error": str(e)},
            )

    def _entry(self, context: str) -> ExecutionMeta:
        self._ensure_loaded()
        meta = self._entries.get(context)
        if meta is None:
            meta = ExecutionMeta()
            self._entries[context] = meta
        return meta

    def record_identity(self, context: str, identity: str, token_source: str) -> None:
        meta = self._entry(context)
        if identity not in meta.identities:
            meta.identities.append(identity)
        meta.token_source = token_source
        self._persist()

    def record_language(self, context: str, language: str) -> None:
        meta = self._entry(context)
        if language not in meta.languages:
            meta.languages.append(language)
        self._persist()

    def record_cleanup(self, context: str, action: str) -> None:
        self._entry(context).cleanup_actions.append(action)
        self._persist()

    def record_rate_limit(self, context: str, details: str) -> None:
        self._entry(context).rate_limit_events.append(details)
        self._persist()

    def record_retry(self, context: str, detail: str) -> None:
        self._entry(context).retry_history.append(detail)
        self._persist()

    def record_governor_stats(self, context: str, *, delay_ms: int, pauses: int, total_429s: int) -> None:
        self._entry(context).governor_stats = GovernorStats(
            delay_ms=delay_ms, pauses=pauses, total_429s=total_429s
        )
        self._persist()

    def record_failure_category(self, context: str, category: str) -> None:
        self._entry(context).failure_category = category
        self._persist()

    def get(self, context: str) -> ExecutionMeta | None:
        self._ensure_loaded()
        return self._entries.get(context)

    def contexts(self) -> list[str]:
        self._ensure_loaded()
        return list(self._entries)

    def to_dict(self) -> dict[str, Any]:
        self._ensure_loaded()
        return {context: meta.model_dump(mode="json") for context, meta in self._entries.items()}
