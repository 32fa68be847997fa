"""
JWT signing and verification for gateway tokens.

The codec turns `TokenClaims` into a compact JWS and back. It is a pure
function pair: no store access, no logging of token material. Expiry is
checked against the codec's clock at verification time with an exclusive
boundary, so a token whose `exp` equals "now" is already expired.
"""

import json
import time
from typing import Callable, Iterable, List, Optional

from jwcrypto import jwk, jws, jwt
from jwcrypto.common import JWException, base64url_encode

from social.graze.gate.token.claims import TokenClaims

MIN_SECRET_BYTES = 32


class TokenCodecException(Exception):
    """
    Exception raised when a token cannot be verified.

    The `reason` attribute is one of "invalid_signature", "expired" or
    "malformed" and is mapped onto `Unauthorized` by the lifecycle manager.
    """

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason

    @staticmethod
    def invalid_signature() -> "TokenCodecException":
        """The signature does not verify against any configured key."""
        return TokenCodecException(
            "invalid_signature", "error-token-codec-1000 Invalid token signature"
        )

    @staticmethod
    def expired() -> "TokenCodecException":
        """The token's exp claim is not in the future."""
        return TokenCodecException("expired", "error-token-codec-1001 Token expired")

    @staticmethod
    def malformed(msg: str = "") -> "TokenCodecException":
        """The token is not a well-formed gateway JWT."""
        return TokenCodecException(
            "malformed", f"error-token-codec-1002 Malformed token: {msg}"
        )


def wall_clock() -> int:
    return int(time.time())


class TokenCodec:
    """
    Signs and verifies gateway tokens with jwcrypto.

    Args:
        signing_key: Private (or symmetric) key used to sign new tokens. Its
            `kid` is placed in the header.
        verification_keys: Keys accepted when verifying. Usually the full JWK
            Set, so tokens signed by a retired key remain verifiable.
        algorithms: Accepted JWS algorithms.
        clock: Returns the current Unix time in seconds.
    """

    def __init__(
        self,
        signing_key: jwk.JWK,
        verification_keys: Optional[jwk.JWKSet] = None,
        algorithms: Iterable[str] = ("ES256",),
        clock: Callable[[], int] = wall_clock,
    ) -> None:
        self._signing_key = signing_key
        if verification_keys is None:
            verification_keys = jwk.JWKSet()
            verification_keys.add(signing_key)
        self._verification_keys = verification_keys
        self._algorithms: List[str] = list(algorithms)
        self._signing_alg = signing_key.get("alg") or _default_alg(signing_key)
        self._clock = clock

    def now(self) -> int:
        return self._clock()

    def sign(self, claims: TokenClaims) -> str:
        header = {"alg": self._signing_alg, "typ": "JWT"}
        kid = self._signing_key.get("kid")
        if kid:
            header["kid"] = kid
        token = jwt.JWT(header=header, claims=claims.to_jwt_claims())
        token.make_signed_token(self._signing_key)
        return token.serialize()

    def verify(self, serialized: str, check_expiry: bool = True) -> TokenClaims:
        """
        Verify a serialized token and return its claims.

        Args:
            serialized: Compact JWS string
            check_expiry: When false, an expired but otherwise valid token is
                returned instead of rejected

        Raises:
            TokenCodecException: invalid_signature, expired or malformed
        """
        if not serialized or serialized.count(".") != 2:
            raise TokenCodecException.malformed("not a compact JWS")

        try:
            # Claim checks are done below so that the boundary is exact and
            # there is no leeway.
            validated = jwt.JWT(
                jwt=serialized,
                key=self._verification_keys,
                algs=self._algorithms,
                check_claims=False,
            )
        except jws.InvalidJWSSignature:
            raise TokenCodecException.invalid_signature()
        except jws.InvalidJWSObject as e:
            raise TokenCodecException.malformed(str(e))
        except JWException:
            # No key matched the header (unknown kid or disallowed alg).
            raise TokenCodecException.invalid_signature()
        except ValueError as e:
            raise TokenCodecException.malformed(str(e))

        try:
            payload = json.loads(validated.claims)
            claims = TokenClaims.from_jwt_claims(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise TokenCodecException.malformed(str(e))

        if check_expiry and claims.expires_at <= self.now():
            raise TokenCodecException.expired()

        return claims


def _default_alg(key: jwk.JWK) -> str:
    kty = key.get("kty")
    if kty == "oct":
        return "HS256"
    if kty == "RSA":
        return "RS256"
    return "ES256"


def symmetric_key(secret: str, kid: str = "gate-hs256") -> jwk.JWK:
    """
    Build an HS256 key from a shared secret.

    Raises:
        ValueError: If the secret is shorter than MIN_SECRET_BYTES once encoded
    """
    encoded = secret.encode("utf-8")
    if len(encoded) < MIN_SECRET_BYTES:
        raise ValueError(
            f"HS256 secret must be at least {MIN_SECRET_BYTES} bytes, got {len(encoded)}"
        )
    return jwk.JWK(kty="oct", k=base64url_encode(encoded), kid=kid, alg="HS256")
