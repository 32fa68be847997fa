"""Claims carried by the gateway's access and refresh tokens."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    """
    The signed content of a gateway token.

    Attributes:
        subject: Opaque user identifier (the user's guid)
        token_id: ULID, unique per issued token; also the allow-list key
        kind: Access or refresh; fixed once signed
        issued_at: Unix seconds
        expires_at: Unix seconds, strictly after issued_at
    """

    subject: str
    token_id: str
    kind: TokenKind
    issued_at: int
    expires_at: int

    def __post_init__(self) -> None:
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be after issued_at")

    @property
    def lifetime(self) -> int:
        return self.expires_at - self.issued_at

    def to_jwt_claims(self) -> Dict[str, Any]:
        return {
            "sub": self.subject,
            "jti": self.token_id,
            "type": self.kind.value,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }

    @classmethod
    def from_jwt_claims(cls, claims: Dict[str, Any]) -> "TokenClaims":
        """
        Build claims from a decoded JWT payload.

        Raises:
            KeyError, TypeError, ValueError: If a claim is missing or has the wrong type
        """
        subject = claims["sub"]
        token_id = claims["jti"]
        if not isinstance(subject, str) or not isinstance(token_id, str):
            raise TypeError("sub and jti must be strings")
        issued_at = claims["iat"]
        expires_at = claims["exp"]
        if isinstance(issued_at, bool) or not isinstance(issued_at, int):
            raise TypeError("iat must be an integer")
        if isinstance(expires_at, bool) or not isinstance(expires_at, int):
            raise TypeError("exp must be an integer")
        return cls(
            subject=subject,
            token_id=token_id,
            kind=TokenKind(claims["type"]),
            issued_at=issued_at,
            expires_at=expires_at,
        )
