"""In-process credential store.

Used by tests and single-process deployments. One re-entrant lock guards
every table, which makes each method atomic with respect to the others.
Records are copied on the way in and out so callers never hold live rows.
"""

import logging
import threading
from datetime import datetime
from typing import Collection, Dict, List
from uuid import UUID

from auth.exceptions import DuplicateUserError
from auth.types import (
    OtpChallenge,
    OtpPurpose,
    RefreshToken,
    RevocationReason,
    Session,
    TrustedDevice,
    User,
)

logger = logging.getLogger(__name__)


class MemoryCredentialStore:
    """Thread-safe dict-backed implementation of CredentialStore."""

    def __init__(self):
        self._lock = threading.RLock()
        self._users: Dict[UUID, User] = {}
        self._refresh_tokens: Dict[str, RefreshToken] = {}
        self._otps: Dict[UUID, OtpChallenge] = {}
        self._sessions: Dict[UUID, Session] = {}
        self._trusted_devices: Dict[tuple[UUID, str], TrustedDevice] = {}

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def get_user_by_email(self, email: str) -> User | None:
        email = email.lower()
        with self._lock:
            for user in self._users.values():
                if user.email.lower() == email:
                    return user.model_copy()
        return None

    def get_user_by_phone(self, phone: str) -> User | None:
        with self._lock:
            for user in self._users.values():
                if user.phone and user.phone == phone:
                    return user.model_copy()
        return None

    def get_user_by_id(self, user_id: UUID) -> User | None:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy() if user else None

    def get_user_by_federated_identity(self, provider: str, subject: str) -> User | None:
        with self._lock:
            for user in self._users.values():
                if user.federated_provider == provider and user.federated_subject == subject:
                    return user.model_copy()
        return None

    def insert_user(self, user: User) -> User:
        with self._lock:
            self._check_unique(user)
            self._users[user.id] = user.model_copy()
        return user.model_copy()

    def save_user(self, user: User) -> User:
        with self._lock:
            self._check_unique(user)
            self._users[user.id] = user.model_copy()
        return user.model_copy()

    def record_login(
        self,
        user_id: UUID,
        now: datetime,
        token: RefreshToken,
        session: Session | None = None,
    ) -> tuple[User, Session | None]:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise ValueError(f"User {user_id} not found")
            user = user.model_copy(update={"last_login_at": now})
            self._users[user_id] = user

            if session is not None:
                session = self.upsert_session(session)
                self.revoke_refresh_tokens_for_user(
                    user_id, RevocationReason.SESSION_REVOKED, now, session_ids=[session.id]
                )
                token = token.model_copy(update={"session_id": session.id})
                session = session.model_copy(update={"refresh_token_id": token.id})
                self._sessions[session.id] = session.model_copy()

            self._refresh_tokens[token.token_hash] = token.model_copy()
            return user.model_copy(), session

    def _check_unique(self, user: User) -> None:
        for other in self._users.values():
            if other.id == user.id:
                continue
            if other.email.lower() == user.email.lower():
                raise DuplicateUserError("email")
            if user.phone and other.phone == user.phone:
                raise DuplicateUserError("phone")

    # -------------------------------------------------------------------------
    # Refresh tokens
    # -------------------------------------------------------------------------

    def find_refresh_token(self, token_hash: str) -> RefreshToken | None:
        with self._lock:
            token = self._refresh_tokens.get(token_hash)
            return token.model_copy() if token else None

    def get_refresh_token(self, token_id: UUID) -> RefreshToken | None:
        with self._lock:
            for token in self._refresh_tokens.values():
                if token.id == token_id:
                    return token.model_copy()
        return None

    def atomic_revoke_and_fetch(
        self,
        token_hash: str,
        reason: RevocationReason,
        now: datetime,
        successor: RefreshToken | None = None,
    ) -> RefreshToken | None:
        with self._lock:
            current = self._refresh_tokens.get(token_hash)
            if current is None:
                return None
            previous = current.model_copy()
            if not current.revoked:
                self._refresh_tokens[token_hash] = current.model_copy(
                    update={
                        "revoked": True,
                        "revoked_at": now,
                        "revoked_reason": reason,
                        "replaced_by": successor.id if successor else None,
                    }
                )
                if successor is not None:
                    self._refresh_tokens[successor.token_hash] = successor.model_copy()
                    session = self._sessions.get(successor.session_id)
                    if session is not None:
                        self._sessions[session.id] = session.model_copy(
                            update={"refresh_token_id": successor.id}
                        )
            return previous

    def insert_refresh_token(self, token: RefreshToken) -> None:
        with self._lock:
            self._refresh_tokens[token.token_hash] = token.model_copy()

    def revoke_refresh_tokens_for_user(
        self,
        user_id: UUID,
        reason: RevocationReason,
        now: datetime,
        *,
        session_ids: Collection[UUID] | None = None,
        except_session_ids: Collection[UUID] = (),
    ) -> int:
        count = 0
        with self._lock:
            for token_hash, token in list(self._refresh_tokens.items()):
                if token.user_id != user_id or token.revoked:
                    continue
                if session_ids is not None and token.session_id not in session_ids:
                    continue
                if token.session_id is not None and token.session_id in except_session_ids:
                    continue
                self._refresh_tokens[token_hash] = token.model_copy(
                    update={"revoked": True, "revoked_at": now, "revoked_reason": reason}
                )
                count += 1
        return count

    # -------------------------------------------------------------------------
    # One-time passcodes
    # -------------------------------------------------------------------------

    def find_latest_pending_otp(self, target: str, purpose: OtpPurpose) -> OtpChallenge | None:
        with self._lock:
            pending = [
                c for c in self._otps.values()
                if c.target == target and c.purpose == purpose and not c.used
            ]
            if not pending:
                return None
            return max(pending, key=lambda c: c.created_at).model_copy()

    def insert_otp(self, challenge: OtpChallenge) -> int:
        invalidated = 0
        with self._lock:
            for challenge_id, existing in list(self._otps.items()):
                if (
                    existing.target == challenge.target
                    and existing.purpose == challenge.purpose
                    and not existing.used
                ):
                    self._otps[challenge_id] = existing.model_copy(update={"used": True})
                    invalidated += 1
            self._otps[challenge.id] = challenge.model_copy()
        return invalidated

    def atomic_increment_otp_attempts(self, challenge_id: UUID) -> int | None:
        with self._lock:
            challenge = self._otps.get(challenge_id)
            if challenge is None or challenge.used or challenge.is_exhausted:
                return None
            attempts = challenge.attempts + 1
            self._otps[challenge_id] = challenge.model_copy(update={"attempts": attempts})
            return attempts

    def mark_otp_used(self, challenge_id: UUID) -> bool:
        with self._lock:
            challenge = self._otps.get(challenge_id)
            if challenge is None or challenge.used:
                return False
            self._otps[challenge_id] = challenge.model_copy(update={"used": True})
            return True

    def mark_otp_verified(self, challenge_id: UUID, now: datetime) -> bool:
        with self._lock:
            challenge = self._otps.get(challenge_id)
            if challenge is None or challenge.used:
                return False
            self._otps[challenge_id] = challenge.model_copy(
                update={"used": True, "verified_at": now}
            )
            return True

    def last_otp_created_at(self, target: str, purpose: OtpPurpose) -> datetime | None:
        with self._lock:
            times = [
                c.created_at for c in self._otps.values()
                if c.target == target and c.purpose == purpose
            ]
        return max(times) if times else None

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def upsert_session(self, session: Session) -> Session:
        with self._lock:
            existing = self._find_session_by_device(session.user_id, session.device_id)
            if existing is not None:
                session = session.model_copy(
                    update={"id": existing.id, "created_at": existing.created_at}
                )
            self._sessions[session.id] = session.model_copy()
            return session.model_copy()

    def get_session(self, session_id: UUID) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy() if session else None

    def get_session_by_device(self, user_id: UUID, device_id: str) -> Session | None:
        with self._lock:
            session = self._find_session_by_device(user_id, device_id)
            return session.model_copy() if session else None

    def _find_session_by_device(self, user_id: UUID, device_id: str) -> Session | None:
        for session in self._sessions.values():
            if session.user_id == user_id and session.device_id == device_id:
                return session
        return None

    def list_active_sessions(self, user_id: UUID) -> List[Session]:
        with self._lock:
            sessions = [
                s.model_copy() for s in self._sessions.values()
                if s.user_id == user_id and s.is_active
            ]
        return sorted(sessions, key=lambda s: s.last_activity_at, reverse=True)

    def touch_session(self, session_id: UUID, now: datetime) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.is_active:
                return False
            self._sessions[session_id] = session.model_copy(update={"last_activity_at": now})
            return True

    def revoke_sessions(
        self,
        user_id: UUID,
        *,
        session_ids: Collection[UUID] | None = None,
        except_device_id: str | None = None,
    ) -> List[UUID]:
        revoked = []
        with self._lock:
            for session_id, session in list(self._sessions.items()):
                if session.user_id != user_id or not session.is_active:
                    continue
                if session_ids is not None and session_id not in session_ids:
                    continue
                if except_device_id is not None and session.device_id == except_device_id:
                    continue
                self._sessions[session_id] = session.model_copy(update={"is_active": False})
                revoked.append(session_id)
        return revoked

    # -------------------------------------------------------------------------
    # Trusted devices
    # -------------------------------------------------------------------------

    def upsert_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        key = (device.user_id, device.device_id)
        with self._lock:
            existing = self._trusted_devices.get(key)
            if existing is not None:
                device = device.model_copy(update={"id": existing.id})
            self._trusted_devices[key] = device.model_copy()
            return device.model_copy()

    def get_trusted_device(self, user_id: UUID, device_id: str) -> TrustedDevice | None:
        with self._lock:
            device = self._trusted_devices.get((user_id, device_id))
            if device is None or not device.is_active:
                return None
            return device.model_copy()

    def list_trusted_devices(self, user_id: UUID) -> List[TrustedDevice]:
        with self._lock:
            devices = [
                d.model_copy() for (owner, _), d in self._trusted_devices.items()
                if owner == user_id and d.is_active
            ]
        return sorted(devices, key=lambda d: d.last_used_at, reverse=True)

    def deactivate_trusted_devices(self, user_id: UUID, device_id: str | None = None) -> int:
        count = 0
        with self._lock:
            for key, device in list(self._trusted_devices.items()):
                owner, owned_device_id = key
                if owner != user_id or not device.is_active:
                    continue
                if device_id is not None and owned_device_id != device_id:
                    continue
                self._trusted_devices[key] = device.model_copy(update={"is_active": False})
                count += 1
        return count

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def purge_expired(
        self,
        now: datetime,
        refresh_token_cutoff: datetime,
        session_cutoff: datetime,
    ) -> dict[str, int]:
        with self._lock:
            dead_otps = [
                cid for cid, c in self._otps.items() if c.used or c.is_expired(now)
            ]
            for cid in dead_otps:
                del self._otps[cid]

            dead_tokens = [
                h for h, t in self._refresh_tokens.items()
                if (t.revoked and t.revoked_at is not None and t.revoked_at < refresh_token_cutoff)
                or t.expires_at < refresh_token_cutoff
            ]
            for h in dead_tokens:
                del self._refresh_tokens[h]

            dead_sessions = [
                sid for sid, s in self._sessions.items()
                if not s.is_active and s.last_activity_at < session_cutoff
            ]
            for sid in dead_sessions:
                del self._sessions[sid]

        counts = {
            "otp_challenges": len(dead_otps),
            "refresh_tokens": len(dead_tokens),
            "sessions": len(dead_sessions),
        }
        logger.info(f"Purged expired credentials: {counts}")
        return counts
