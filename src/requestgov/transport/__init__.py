"""Transport boundary: response/record types and the aiohttp API client."""

from requestgov.transport.http_client import (
    EndpointConfig,
    HealthStatus,
    RemoteApiClient,
    decode_body,
)
from requestgov.transport.types import (
    DEFAULT_TOKEN_PATH,
    ApiResponse,
    ItemId,
    RemoteItem,
    ResponseLike,
    extract_item_id,
    extract_token,
    is_server_error,
    is_success,
    normalize_id,
    parse_items,
)

__all__ = [
    "DEFAULT_TOKEN_PATH",
    "ApiResponse",
    "EndpointConfig",
    "HealthStatus",
    "ItemId",
    "RemoteApiClient",
    "RemoteItem",
    "ResponseLike",
    "decode_body",
    "extract_item_id",
    "extract_token",
    "is_server_error",
    "is_success",
    "normalize_id",
    "parse_items",
]
