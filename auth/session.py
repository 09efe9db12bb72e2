"""Per-device sessions and device trust.

A session is one login on one device, keyed by (user, device_id) and reused
when the same device logs in again. Trust lives in its own table and
survives any amount of session churn: revoking sessions never untrusts a
device, and untrusting never closes a session.
"""

import logging
from uuid import UUID, uuid4

from auth.exceptions import DeviceNotFoundError, SessionNotFoundError
from auth.store import CredentialStore
from auth.types import (
    DeviceInfo,
    RevocationReason,
    Session,
    SessionView,
    TrustedDevice,
    User,
)
from utils.timezone import Clock, now_utc

logger = logging.getLogger(__name__)


class SessionManager:
    """Session lifecycle and trusted-device bookkeeping."""

    def __init__(self, store: CredentialStore, clock: Clock = now_utc):
        self._store = store
        self._clock = clock

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def new_session(
        self,
        user: User,
        device: DeviceInfo,
        ip_address: str | None = None,
        refresh_token_id: UUID | None = None,
    ) -> Session:
        """Unsaved session for (user, device); the trust flag is copied from trusted devices."""
        now = self._clock()
        return Session(
            id=uuid4(),
            user_id=user.id,
            device_id=device.device_id,
            refresh_token_id=refresh_token_id,
            device_name=device.device_name,
            device_model=device.device_model,
            platform=device.platform,
            system_version=device.system_version,
            app_version=device.app_version,
            ip_address=ip_address,
            is_trusted=self._store.get_trusted_device(user.id, device.device_id) is not None,
            is_active=True,
            last_activity_at=now,
            created_at=now,
        )

    def open_session(
        self,
        user: User,
        device: DeviceInfo,
        refresh_token_id: UUID | None,
        ip_address: str | None = None,
    ) -> Session:
        """Create or reactivate the session for (user, device), linking the refresh token."""
        session = self._store.upsert_session(
            self.new_session(user, device, ip_address, refresh_token_id)
        )
        logger.info(f"Session {session.id} opened for user {user.id}")
        return session

    def touch(self, session_id: UUID) -> None:
        """Best-effort activity bump. Never fails the caller's request."""
        try:
            self._store.touch_session(session_id, self._clock())
        except Exception as e:
            logger.warning(f"Failed to touch session {session_id}: {e}")

    def get(self, user_id: UUID, session_id: UUID) -> Session:
        session = self._store.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFoundError("Session not found")
        return session

    def is_valid(self, session_id: UUID) -> bool:
        """Active, and its linked refresh token (if any) is active too."""
        session = self._store.get_session(session_id)
        if session is None or not session.is_active:
            return False
        if session.refresh_token_id is None:
            return True
        token = self._store.get_refresh_token(session.refresh_token_id)
        return token is not None and token.is_active(self._clock())

    def list_active(self, user_id: UUID, current_device_id: str | None = None) -> list[SessionView]:
        sessions = self._store.list_active_sessions(user_id)
        trusted = {d.device_id for d in self._store.list_trusted_devices(user_id)}
        return [
            SessionView.from_session(
                s.model_copy(update={"is_trusted": s.device_id in trusted}),
                current_device_id,
            )
            for s in sessions
        ]

    def revoke(self, user_id: UUID, session_id: UUID) -> None:
        """
        Close one session and revoke its refresh tokens.

        Raises:
            SessionNotFoundError: Unknown, inactive, or owned by someone else.
        """
        session = self._store.get_session(session_id)
        if session is None or session.user_id != user_id or not session.is_active:
            raise SessionNotFoundError("Session not found")

        revoked = self._store.revoke_sessions(user_id, session_ids=[session_id])
        self._revoke_tokens(user_id, revoked)
        logger.info(f"Session {session_id} revoked for user {user_id}")

    def revoke_all(self, user_id: UUID) -> int:
        revoked = self._store.revoke_sessions(user_id)
        self._revoke_tokens(user_id, revoked)
        logger.info(f"All sessions revoked for user {user_id} ({len(revoked)})")
        return len(revoked)

    def revoke_all_except(self, user_id: UUID, device_id: str) -> int:
        revoked = self._store.revoke_sessions(user_id, except_device_id=device_id)
        self._revoke_tokens(user_id, revoked)
        logger.info(f"Other sessions revoked for user {user_id} ({len(revoked)})")
        return len(revoked)

    def _revoke_tokens(self, user_id: UUID, session_ids: list[UUID]) -> None:
        if not session_ids:
            return
        self._store.revoke_refresh_tokens_for_user(
            user_id,
            RevocationReason.SESSION_REVOKED,
            self._clock(),
            session_ids=session_ids,
        )

    # -------------------------------------------------------------------------
    # Trusted devices
    # -------------------------------------------------------------------------

    def trust(self, user_id: UUID, device: DeviceInfo) -> TrustedDevice:
        now = self._clock()
        trusted = self._store.upsert_trusted_device(
            TrustedDevice(
                id=uuid4(),
                user_id=user_id,
                device_id=device.device_id,
                custom_name=device.custom_name,
                device_name=device.device_name,
                device_model=device.device_model,
                platform=device.platform,
                system_version=device.system_version,
                app_version=device.app_version,
                is_active=True,
                last_used_at=now,
                trusted_at=now,
            )
        )
        self._mirror_trust_flag(user_id, device.device_id, True)
        logger.info(f"Device trusted for user {user_id}")
        return trusted

    def untrust(self, user_id: UUID, device_id: str) -> None:
        """
        Raises:
            DeviceNotFoundError: Device is not currently trusted.
        """
        if self._store.deactivate_trusted_devices(user_id, device_id) == 0:
            raise DeviceNotFoundError("Trusted device not found")
        self._mirror_trust_flag(user_id, device_id, False)
        logger.info(f"Device untrusted for user {user_id}")

    def untrust_all(self, user_id: UUID) -> int:
        count = self._store.deactivate_trusted_devices(user_id)
        for session in self._store.list_active_sessions(user_id):
            if session.is_trusted:
                self._store.upsert_session(session.model_copy(update={"is_trusted": False}))
        return count

    def is_trusted(self, user_id: UUID, device_id: str) -> bool:
        return self._store.get_trusted_device(user_id, device_id) is not None

    def list_trusted(self, user_id: UUID) -> list[TrustedDevice]:
        return self._store.list_trusted_devices(user_id)

    def _mirror_trust_flag(self, user_id: UUID, device_id: str, trusted: bool) -> None:
        """Keep the session row's trust flag in step with the trusted-device table."""
        session = self._store.get_session_by_device(user_id, device_id)
        if session is not None and session.is_trusted != trusted:
            self._store.upsert_session(session.model_copy(update={"is_trusted": trusted}))
