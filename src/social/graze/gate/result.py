"""
Tagged results for authentication outcomes.

Operations that can be refused for authentication reasons (token validation,
rotation, handshake completion, login) return either `Ok(value)` or
`Err(reason)` instead of raising. Callers match on the result:

    result = await lifecycle.validate(token)
    match result:
        case Ok(claims):
            ...
        case Err(reason):
            ...

Infrastructure failures (a Redis connection error, a database outage) are not
results; they propagate as exceptions so that the HTTP layer reports them as
server errors.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


class Unauthorized(str, Enum):
    """Reasons a credential or login attempt was refused."""

    MISSING = "missing"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"
    MALFORMED = "malformed"
    REVOKED = "revoked"
    WRONG_KIND = "wrong_kind"
    INVALID_STATE = "invalid_state"
    NONCE_MISMATCH = "nonce_mismatch"
    IN_PROGRESS = "in_progress"
    UNKNOWN_USER = "unknown_user"
    PROVIDER_REJECTED = "provider_rejected"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    def is_ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    reason: E

    def is_ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[E]]
