"""Refresh token issue, rotation and revocation.

Refresh tokens are opaque random strings; the store only ever sees their
SHA-256. Each token may be exchanged exactly once. Presenting a token that
already has a successor is treated as theft: every token the owner holds
is revoked and their sessions are closed.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID, uuid4

from auth.config import AuthConfig
from auth.exceptions import (
    AccountDisabledError,
    RefreshFailure,
    RefreshTokenError,
    TokenReusedError,
)
from auth.store import CredentialStore
from auth.tokens import TokenCodec
from auth.types import RefreshToken, RevocationReason, User
from utils.timezone import Clock, now_utc

logger = logging.getLogger(__name__)


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest of an opaque token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


@dataclass
class RotationResult:
    """Outcome of a successful rotation."""

    user: User
    access_token: str
    refresh_token: str
    record: RefreshToken


class RefreshTokenEngine:
    """Single-use refresh token rotation with reuse detection."""

    TOKEN_BYTES = 48

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        config: AuthConfig,
        clock: Clock = now_utc,
    ):
        self._store = store
        self._codec = codec
        self._config = config
        self._clock = clock

    def mint(self, user_id: UUID, session_id: UUID | None = None) -> tuple[str, RefreshToken]:
        """A fresh token and its record, not yet persisted."""
        raw = secrets.token_urlsafe(self.TOKEN_BYTES)
        now = self._clock()
        record = RefreshToken(
            id=uuid4(),
            token_hash=hash_token(raw),
            user_id=user_id,
            session_id=session_id,
            created_at=now,
            expires_at=now + timedelta(days=self._config.refresh_token_ttl_days),
            revoked=False,
        )
        return raw, record

    def issue(self, user_id: UUID, session_id: UUID | None = None) -> tuple[str, RefreshToken]:
        """Create and persist a fresh token. Returns (raw token, stored record)."""
        raw, record = self.mint(user_id, session_id)
        self._store.insert_refresh_token(record)
        return raw, record

    def rotate(self, raw_token: str) -> RotationResult:
        """
        Exchange a refresh token for a new access/refresh pair.

        Flow:
        1. Lookup by hash (absent -> NOT_FOUND)
        2. Revoked with a successor -> reuse path; otherwise REVOKED
        3. Expired -> revoke it, EXPIRED
        4. Owner gone or deactivated -> revoke all, AccountDisabledError
        5. Atomic revoke + successor insert + session relink; losing the race -> reuse path
        6. Issue the access token

        Raises:
            RefreshTokenError: NOT_FOUND, EXPIRED or REVOKED.
            TokenReusedError: Token already rotated; all of the owner's
                tokens have been revoked.
            AccountDisabledError: Owner is deactivated.
        """
        token_hash = hash_token(raw_token)
        now = self._clock()

        current = self._store.find_refresh_token(token_hash)
        if current is None:
            raise RefreshTokenError(RefreshFailure.NOT_FOUND, "Refresh token not found")

        if current.revoked:
            if current.was_rotated:
                self._handle_reuse(current)
            raise RefreshTokenError(RefreshFailure.REVOKED, "Refresh token has been revoked")

        if current.is_expired(now):
            self._store.atomic_revoke_and_fetch(token_hash, RevocationReason.EXPIRED, now)
            raise RefreshTokenError(RefreshFailure.EXPIRED, "Refresh token has expired")

        user = self._store.get_user_by_id(current.user_id)
        if user is None or not user.is_active:
            self._store.revoke_refresh_tokens_for_user(
                current.user_id, RevocationReason.ACCOUNT_DISABLED, now
            )
            raise AccountDisabledError("User account is deactivated")

        raw_successor, successor = self.mint(current.user_id, current.session_id)
        previous = self._store.atomic_revoke_and_fetch(
            token_hash, RevocationReason.ROTATED, now, successor=successor
        )
        if previous is None:
            raise RefreshTokenError(RefreshFailure.NOT_FOUND, "Refresh token not found")
        if previous.revoked:
            # Another caller got here first
            if previous.was_rotated:
                self._handle_reuse(previous)
            raise RefreshTokenError(RefreshFailure.REVOKED, "Refresh token has been revoked")

        access_token = self._codec.issue(user.id, user.email, user.role)
        return RotationResult(
            user=user,
            access_token=access_token,
            refresh_token=raw_successor,
            record=successor,
        )

    def _handle_reuse(self, token: RefreshToken) -> None:
        """Assume compromise: revoke every token and session the owner has."""
        now = self._clock()
        revoked = self._store.revoke_refresh_tokens_for_user(
            token.user_id, RevocationReason.REUSE_DETECTED, now
        )
        sessions = self._store.revoke_sessions(token.user_id)
        logger.warning(
            f"Refresh token reuse detected for user {token.user_id}: "
            f"revoked {revoked} token(s) and {len(sessions)} session(s)"
        )
        raise TokenReusedError()

    def revoke(
        self,
        raw_token: str,
        reason: RevocationReason = RevocationReason.LOGOUT,
    ) -> RefreshToken | None:
        """
        Revoke a single token.

        Returns the record as it was before revocation, or None if the token
        is unknown or was already revoked.
        """
        previous = self._store.atomic_revoke_and_fetch(
            hash_token(raw_token), reason, self._clock()
        )
        if previous is None or previous.revoked:
            return None
        return previous

    def revoke_all(
        self,
        user_id: UUID,
        reason: RevocationReason = RevocationReason.LOGOUT,
    ) -> int:
        return self._store.revoke_refresh_tokens_for_user(user_id, reason, self._clock())

    def revoke_all_except_device(
        self,
        user_id: UUID,
        device_id: str,
        reason: RevocationReason = RevocationReason.SESSION_REVOKED,
    ) -> int:
        """Revoke every token except those bound to the session on `device_id`."""
        session = self._store.get_session_by_device(user_id, device_id)
        keep = [session.id] if session is not None else []
        return self._store.revoke_refresh_tokens_for_user(
            user_id, reason, self._clock(), except_session_ids=keep
        )

    def is_active(self, token_id: UUID) -> bool:
        token = self._store.get_refresh_token(token_id)
        return token is not None and token.is_active(self._clock())
