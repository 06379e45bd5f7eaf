"""
Types at the transport boundary.

Components above the transport only ever see a status code and a decoded
body; ``ApiResponse`` is the concrete carrier, ``ResponseLike`` the shape
they depend on. Remote records are validated into ``RemoteItem``.
"""

from __future__ import annotations

import contextlib
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, field_validator

ItemId = int | str

DEFAULT_TOKEN_PATH: tuple[str, ...] = ("data", "access_token")


class ResponseLike(Protocol):
    """Anything exposing an HTTP status and a decoded body."""

    @property
    def status(self) -> int: ...

    @property
    def body(self) -> Any: ...


def is_success(status: int) -> bool:
    return 200 <= status < 300


def is_server_error(status: int) -> bool:
    return 500 <= status < 600


@dataclass(frozen=True)
class ApiResponse:
    """A fully read HTTP response."""

    status: int
    body: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)
    url: str = ""

    @property
    def ok(self) -> bool:
        return is_success(self.status)

    @property
    def retry_after_ms(self) -> int | None:
        """Retry-After header in milliseconds, if it is a number of seconds."""
        raw = self.headers.get("Retry-After")
        if raw is None:
            return None
        with contextlib.suppress(ValueError):
            return int(float(raw) * 1000)
        return None


def normalize_id(value: Any) -> ItemId:
    """Numeric ids (including numeric strings) become ints, the rest strings.

    The remote API is inconsistent about returning ``123`` or ``"123"``;
    local bookkeeping must treat both as the same item.
    """
    if isinstance(value, bool):
        raise ValueError(f"Boolean is not a valid item id: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    text = str(value).strip()
    if not text:
        raise ValueError("Empty item id")
    if text.lstrip("-").isdigit():
        return int(text)
    return text


def _truthy_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return value is True or value == 1


class RemoteItem(BaseModel):
    """One record of a remote collection.

    Only the fields the governance layer reasons about are typed; everything
    else the server sends is kept as extra data.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    id: ItemId
    is_default: bool = False
    client_id: ItemId | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, v: Any) -> ItemId:
        return normalize_id(v)

    @field_validator("client_id", mode="before")
    @classmethod
    def _normalize_client_id(cls, v: Any) -> ItemId | None:
        if v is None or v == "":
            return None
        return normalize_id(v)

    @field_validator("is_default", mode="before")
    @classmethod
    def _coerce_default(cls, v: Any) -> bool:
        return _truthy_flag(v)

    def get(self, name: str, default: Any = None) -> Any:
        """Read a typed or extra field by name."""
        if name in type(self).model_fields:
            return getattr(self, name)
        return (self.model_extra or {}).get(name, default)

    def matches(self, name: str, value: Any) -> bool:
        """Exact field match; id-like fields compare after normalization."""
        actual = self.get(name)
        if actual is None:
            return False
        if name in {"id", "client_id"}:
            try:
                return actual == normalize_id(value)
            except ValueError:
                return False
        return bool(actual == value)


def parse_items(body: Any) -> list[RemoteItem]:
    """
    Extract the record list from a list response.

    Accepts ``{"data": [...]}`` (rejecting ``success: false`` and a
    ``status`` other than ``"success"``) or a bare JSON array.

    Raises:
        ValueError: The body does not hold a list of valid records.
    """
    records: Any
    if isinstance(body, list):
        records = body
    elif isinstance(body, Mapping):
        if body.get("success") is False:
            raise ValueError("List response reported success=false")
        status = body.get("status")
        if status is not None and status != "success":
            raise ValueError(f"List response reported status={status!r}")
        records = body.get("data")
    else:
        raise ValueError(f"Unexpected list response type: {type(body).__name__}")

    if not isinstance(records, Sequence) or isinstance(records, (str, bytes)):
        raise ValueError("List response has no record array")
    return [RemoteItem.model_validate(record) for record in records]


def extract_token(body: Any, path: Sequence[str] = DEFAULT_TOKEN_PATH) -> str | None:
    """Walk ``path`` through nested mappings; return a non-empty string token or None."""
    node = body
    for key in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    if isinstance(node, str) and node:
        return node
    return None


def extract_item_id(body: Any) -> ItemId | None:
    """Id of a created record from ``{"data": {"id": ...}}`` or ``{"id": ...}``."""
    if not isinstance(body, Mapping):
        return None
    data = body.get("data")
    candidate = data.get("id") if isinstance(data, Mapping) else body.get("id")
    if candidate is None:
        return None
    try:
        return normalize_id(candidate)
    except ValueError:
        return None
