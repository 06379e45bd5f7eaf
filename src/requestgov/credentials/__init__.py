"""Identity pool: credentials, tokens and rotation."""

from requestgov.credentials.pool import (
    AuthenticationError,
    CredentialPool,
    Credentials,
    Identity,
    IdentitySlot,
    PoolConfig,
    RotationEvent,
    TokenStore,
)

__all__ = [
    "AuthenticationError",
    "CredentialPool",
    "Credentials",
    "Identity",
    "IdentitySlot",
    "PoolConfig",
    "RotationEvent",
    "TokenStore",
]
