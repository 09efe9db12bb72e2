"""Signed access tokens.

Compact JWTs signed with the shared HMAC secret. Verification needs nothing
but the token and the clock, so it never touches the credential store.
A user deactivated after issue keeps a working access token until it
expires; callers that need instant revocation go through
`AuthService.authenticate_access_token`, which also checks the live user.
"""

import logging
import secrets
from datetime import timedelta
from uuid import UUID

import jwt
from jwt.exceptions import DecodeError, InvalidAlgorithmError, InvalidSignatureError, PyJWTError

from auth.config import AuthConfig
from auth.exceptions import InvalidTokenError, TokenFailure
from auth.types import AccessTokenClaims, Role, TokenType
from utils.timezone import Clock, from_timestamp, now_utc

logger = logging.getLogger(__name__)


class TokenCodec:
    """Issue and verify signed tokens. Stateless apart from config and clock."""

    REQUIRED_CLAIMS = ("sub", "userId", "role", "tokenType", "iat", "exp", "iss", "jti")

    def __init__(self, config: AuthConfig, clock: Clock = now_utc):
        self._config = config
        self._clock = clock

    def expiry_seconds(self, token_type: TokenType = TokenType.ACCESS) -> int:
        """Configured lifetime in seconds, for client-facing `expires_in`."""
        if token_type is TokenType.REFRESH:
            return int(timedelta(days=self._config.refresh_token_ttl_days).total_seconds())
        return int(timedelta(minutes=self._config.access_token_ttl_minutes).total_seconds())

    def issue(
        self,
        user_id: UUID,
        email: str,
        role: Role,
        token_type: TokenType = TokenType.ACCESS,
    ) -> str:
        """Build and sign the claim set: iat=now, exp=now+ttl(type)."""
        issued_at = int(self._clock().timestamp())
        payload = {
            "sub": email,
            "userId": str(user_id),
            "role": role.value,
            "tokenType": token_type.value,
            "iat": issued_at,
            "exp": issued_at + self.expiry_seconds(token_type),
            "iss": self._config.issuer,
            "jti": secrets.token_urlsafe(16),
        }
        return jwt.encode(
            payload,
            self._config.signing_key,
            algorithm=self._config.signing_algorithm,
        )

    def verify(self, token: str, expected_type: TokenType = TokenType.ACCESS) -> AccessTokenClaims:
        """Verify signature, then claim shape, then expiry.

        PyJWT's own expiry check is disabled so that expiry is judged against
        the injected clock rather than the host's.

        Raises:
            InvalidTokenError: reason is INVALID_SIGNATURE, MALFORMED,
                EXPIRED or UNSUPPORTED_TYPE.
        """
        if not token:
            raise InvalidTokenError(TokenFailure.MALFORMED, "Token is empty")

        try:
            payload = jwt.decode(
                token,
                self._config.signing_key,
                algorithms=[self._config.signing_algorithm],
                options={
                    "verify_signature": True,
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                    "verify_iss": False,
                    "verify_aud": False,
                },
            )
        except (InvalidSignatureError, InvalidAlgorithmError):
            raise InvalidTokenError(TokenFailure.INVALID_SIGNATURE, "Token signature is invalid")
        except DecodeError:
            raise InvalidTokenError(TokenFailure.MALFORMED, "Token could not be decoded")
        except PyJWTError as e:
            logger.warning(f"Token rejected by decoder: {type(e).__name__}")
            raise InvalidTokenError(TokenFailure.MALFORMED, "Token could not be decoded")

        missing = [claim for claim in self.REQUIRED_CLAIMS if claim not in payload]
        if missing:
            raise InvalidTokenError(
                TokenFailure.MALFORMED, f"Token is missing claims: {', '.join(missing)}"
            )

        if payload["iss"] != self._config.issuer:
            raise InvalidTokenError(TokenFailure.MALFORMED, "Token issuer is not recognized")

        try:
            token_type = TokenType(payload["tokenType"])
            claims = AccessTokenClaims(
                subject=payload["sub"],
                user_id=UUID(payload["userId"]),
                role=Role(payload["role"]),
                token_type=token_type,
                issued_at=from_timestamp(payload["iat"]),
                expires_at=from_timestamp(payload["exp"]),
                issuer=payload["iss"],
                token_id=payload["jti"],
            )
        except (ValueError, TypeError):
            raise InvalidTokenError(TokenFailure.MALFORMED, "Token claims are malformed")

        if token_type is not expected_type:
            raise InvalidTokenError(
                TokenFailure.UNSUPPORTED_TYPE,
                f"Expected {expected_type.value} token, got {token_type.value}",
            )

        if self._clock() >= claims.expires_at:
            raise InvalidTokenError(TokenFailure.EXPIRED, "Token has expired")

        return claims
