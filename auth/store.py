"""Credential store contract.

Every engine talks to persistence through this protocol. "Not found" is
`None` (or `False` for updates that matched nothing), never an exception.
Operations that must be observed atomically are single methods here so
that each backend can implement them as one transaction.
"""

from datetime import datetime
from typing import Collection, Protocol
from uuid import UUID

from auth.types import (
    OtpChallenge,
    OtpPurpose,
    RefreshToken,
    RevocationReason,
    Session,
    TrustedDevice,
    User,
)


class CredentialStore(Protocol):
    """Persistence for users, refresh tokens, passcodes, sessions and trusted devices."""

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def get_user_by_email(self, email: str) -> User | None: ...

    def get_user_by_phone(self, phone: str) -> User | None: ...

    def get_user_by_id(self, user_id: UUID) -> User | None: ...

    def get_user_by_federated_identity(self, provider: str, subject: str) -> User | None: ...

    def insert_user(self, user: User) -> User:
        """Raises DuplicateUserError when email or phone is taken."""
        ...

    def save_user(self, user: User) -> User: ...

    def record_login(
        self,
        user_id: UUID,
        now: datetime,
        token: RefreshToken,
        session: Session | None = None,
    ) -> tuple[User, Session | None]:
        """
        Persist the store side of a login as one transaction.

        Stamps `last_login_at`. With a session: upserts it (an existing row
        for the same device keeps its id), revokes that session's live
        tokens as SESSION_REVOKED, inserts `token` bound to the stored
        session and points the session at it. Without one, `token` is
        inserted unbound.

        Returns the updated user and the stored session.
        """
        ...

    # -------------------------------------------------------------------------
    # Refresh tokens
    # -------------------------------------------------------------------------

    def find_refresh_token(self, token_hash: str) -> RefreshToken | None: ...

    def get_refresh_token(self, token_id: UUID) -> RefreshToken | None: ...

    def atomic_revoke_and_fetch(
        self,
        token_hash: str,
        reason: RevocationReason,
        now: datetime,
        successor: RefreshToken | None = None,
    ) -> RefreshToken | None:
        """
        Revoke the token iff it is not already revoked, in one atomic step.

        When the revoke happens and `successor` is given, the successor is
        inserted in the same transaction and recorded as `replaced_by`.

        A session linked to the successor is re-pointed at it in the same
        step.

        Returns the state *before* the call (None if no such token). The
        caller won the race iff the returned record has `revoked == False`.
        Expiry is judged by the caller before calling.
        """
        ...

    def insert_refresh_token(self, token: RefreshToken) -> None: ...

    def revoke_refresh_tokens_for_user(
        self,
        user_id: UUID,
        reason: RevocationReason,
        now: datetime,
        *,
        session_ids: Collection[UUID] | None = None,
        except_session_ids: Collection[UUID] = (),
    ) -> int:
        """
        Revoke the user's active tokens. Returns how many changed.

        `session_ids` narrows to tokens linked to those sessions;
        `except_session_ids` spares tokens linked to those sessions.
        """
        ...

    # -------------------------------------------------------------------------
    # One-time passcodes
    # -------------------------------------------------------------------------

    def find_latest_pending_otp(self, target: str, purpose: OtpPurpose) -> OtpChallenge | None: ...

    def insert_otp(self, challenge: OtpChallenge) -> int:
        """Mark every pending challenge for (target, purpose) used, then insert.

        Returns how many pending challenges were invalidated.
        """
        ...

    def atomic_increment_otp_attempts(self, challenge_id: UUID) -> int | None:
        """
        Increment attempts iff the challenge is pending and below max_attempts.

        Returns the new count, or None when nothing was incremented.
        """
        ...

    def mark_otp_used(self, challenge_id: UUID) -> bool: ...

    def mark_otp_verified(self, challenge_id: UUID, now: datetime) -> bool:
        """Consume a pending challenge. False if someone else consumed it first."""
        ...

    def last_otp_created_at(self, target: str, purpose: OtpPurpose) -> datetime | None: ...

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def upsert_session(self, session: Session) -> Session:
        """Insert, or update the existing row for (user_id, device_id).

        An existing row keeps its id and created_at.
        """
        ...

    def get_session(self, session_id: UUID) -> Session | None: ...

    def get_session_by_device(self, user_id: UUID, device_id: str) -> Session | None: ...

    def list_active_sessions(self, user_id: UUID) -> list[Session]:
        """Active sessions, most recently used first."""
        ...

    def touch_session(self, session_id: UUID, now: datetime) -> bool: ...

    def revoke_sessions(
        self,
        user_id: UUID,
        *,
        session_ids: Collection[UUID] | None = None,
        except_device_id: str | None = None,
    ) -> list[UUID]:
        """Deactivate the user's active sessions. Returns the ids deactivated."""
        ...

    # -------------------------------------------------------------------------
    # Trusted devices
    # -------------------------------------------------------------------------

    def upsert_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        """Insert, or reactivate and update the row for (user_id, device_id)."""
        ...

    def get_trusted_device(self, user_id: UUID, device_id: str) -> TrustedDevice | None:
        """Active trusted device, or None."""
        ...

    def list_trusted_devices(self, user_id: UUID) -> list[TrustedDevice]: ...

    def deactivate_trusted_devices(self, user_id: UUID, device_id: str | None = None) -> int: ...

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def purge_expired(
        self,
        now: datetime,
        refresh_token_cutoff: datetime,
        session_cutoff: datetime,
    ) -> dict[str, int]:
        """
        Delete dead rows. Returns counts keyed by table.

        - passcodes that are used or expired
        - refresh tokens revoked or expired before `refresh_token_cutoff`
        - inactive sessions last used before `session_cutoff`
        """
        ...
