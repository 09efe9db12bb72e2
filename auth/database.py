"""Postgres implementation of the credential store.

Tables are created by auth/schema.sql. Every operation that must be atomic
is a single statement (CTE with RETURNING) or runs inside
`PostgresClient.transaction()`.
"""

import logging
from datetime import datetime
from typing import Collection
from uuid import UUID

import psycopg2.errors

from clients.postgres_client import PostgresClient
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

USER_COLUMNS = """id, email, phone, full_name, password_hash, federated_provider,
    federated_subject, role, is_active, email_verified, phone_verified,
    created_at, last_login_at"""

REFRESH_TOKEN_COLUMNS = """id, token_hash, user_id, session_id, created_at, expires_at,
    revoked, revoked_at, revoked_reason, replaced_by"""

OTP_COLUMNS = """id, target, purpose, user_id, code_hash, created_at, expires_at,
    attempts, max_attempts, used, verified_at"""

SESSION_COLUMNS = """id, user_id, device_id, refresh_token_id, device_name, device_model,
    platform, system_version, app_version, ip_address, is_trusted, is_active,
    last_activity_at, created_at"""

TRUSTED_DEVICE_COLUMNS = """id, user_id, device_id, custom_name, device_name, device_model,
    platform, system_version, app_version, is_active, last_used_at, trusted_at"""


_INSERT_REFRESH_TOKEN_SQL = """INSERT INTO refresh_tokens
        (id, token_hash, user_id, session_id, created_at, expires_at,
         revoked, revoked_at, revoked_reason, replaced_by)
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)"""

_UPSERT_SESSION_SQL = f"""INSERT INTO user_sessions
        (id, user_id, device_id, refresh_token_id, device_name, device_model,
         platform, system_version, app_version, ip_address, is_trusted,
         is_active, last_activity_at, created_at)
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    ON CONFLICT (user_id, device_id) DO UPDATE SET
        refresh_token_id = EXCLUDED.refresh_token_id,
        device_name = EXCLUDED.device_name,
        device_model = EXCLUDED.device_model,
        platform = EXCLUDED.platform,
        system_version = EXCLUDED.system_version,
        app_version = EXCLUDED.app_version,
        ip_address = EXCLUDED.ip_address,
        is_trusted = EXCLUDED.is_trusted,
        is_active = EXCLUDED.is_active,
        last_activity_at = EXCLUDED.last_activity_at
    RETURNING {SESSION_COLUMNS}"""


def _uuid_list(ids: Collection[UUID]) -> list[str]:
    return [str(i) for i in ids]


def _refresh_token_params(token: RefreshToken) -> tuple:
    return (
        token.id,
        token.token_hash,
        token.user_id,
        token.session_id,
        token.created_at,
        token.expires_at,
        token.revoked,
        token.revoked_at,
        token.revoked_reason.value if token.revoked_reason else None,
        token.replaced_by,
    )


def _session_params(session: Session) -> tuple:
    return (
        session.id,
        session.user_id,
        session.device_id,
        session.refresh_token_id,
        session.device_name,
        session.device_model,
        session.platform,
        session.system_version,
        session.app_version,
        session.ip_address,
        session.is_trusted,
        session.is_active,
        session.last_activity_at,
        session.created_at,
    )


class PostgresCredentialStore:
    """CredentialStore backed by psycopg2."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def get_user_by_email(self, email: str) -> User | None:
        """Find user by email (case-insensitive)."""
        row = self._db.execute_single(
            f"SELECT {USER_COLUMNS} FROM users WHERE lower(email) = lower(%s)",
            (email,),
        )
        return User.model_validate(row) if row else None

    def get_user_by_phone(self, phone: str) -> User | None:
        row = self._db.execute_single(
            f"SELECT {USER_COLUMNS} FROM users WHERE phone = %s",
            (phone,),
        )
        return User.model_validate(row) if row else None

    def get_user_by_id(self, user_id: UUID) -> User | None:
        row = self._db.execute_single(
            f"SELECT {USER_COLUMNS} FROM users WHERE id = %s",
            (user_id,),
        )
        return User.model_validate(row) if row else None

    def get_user_by_federated_identity(self, provider: str, subject: str) -> User | None:
        row = self._db.execute_single(
            f"""SELECT {USER_COLUMNS} FROM users
                WHERE federated_provider = %s AND federated_subject = %s""",
            (provider, subject),
        )
        return User.model_validate(row) if row else None

    def insert_user(self, user: User) -> User:
        """Create user (email lowercased). Raises DuplicateUserError on conflict."""
        try:
            rows = self._db.execute_returning(
                f"""INSERT INTO users (id, email, phone, full_name, password_hash,
                        federated_provider, federated_subject, role, is_active,
                        email_verified, phone_verified, created_at, last_login_at)
                    VALUES (%s, lower(%s), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {USER_COLUMNS}""",
                self._user_params(user),
            )
        except psycopg2.errors.UniqueViolation as e:
            raise DuplicateUserError(self._duplicate_field(e))
        return User.model_validate(rows[0])

    def save_user(self, user: User) -> User:
        try:
            rows = self._db.execute_returning(
                f"""UPDATE users SET
                        email = lower(%s), phone = %s, full_name = %s, password_hash = %s,
                        federated_provider = %s, federated_subject = %s, role = %s,
                        is_active = %s, email_verified = %s, phone_verified = %s,
                        last_login_at = %s
                    WHERE id = %s
                    RETURNING {USER_COLUMNS}""",
                (
                    user.email,
                    user.phone,
                    user.full_name,
                    user.password_hash,
                    user.federated_provider,
                    user.federated_subject,
                    user.role.value,
                    user.is_active,
                    user.email_verified,
                    user.phone_verified,
                    user.last_login_at,
                    user.id,
                ),
            )
        except psycopg2.errors.UniqueViolation as e:
            raise DuplicateUserError(self._duplicate_field(e))
        if not rows:
            raise ValueError(f"User {user.id} not found")
        return User.model_validate(rows[0])

    def record_login(
        self,
        user_id: UUID,
        now: datetime,
        token: RefreshToken,
        session: Session | None = None,
    ) -> tuple[User, Session | None]:
        with self._db.transaction() as cur:
            cur.execute(
                f"UPDATE users SET last_login_at = %s WHERE id = %s RETURNING {USER_COLUMNS}",
                (now, user_id),
            )
            user_row = cur.fetchone()
            if user_row is None:
                raise ValueError(f"User {user_id} not found")

            if session is not None:
                cur.execute(_UPSERT_SESSION_SQL, _session_params(session))
                session = Session.model_validate(cur.fetchone())
                cur.execute(
                    """UPDATE refresh_tokens
                       SET revoked = true, revoked_at = %s, revoked_reason = %s
                       WHERE user_id = %s AND session_id = %s AND NOT revoked""",
                    (now, RevocationReason.SESSION_REVOKED.value, user_id, session.id),
                )
                token = token.model_copy(update={"session_id": session.id})

            cur.execute(_INSERT_REFRESH_TOKEN_SQL, _refresh_token_params(token))

            if session is not None:
                cur.execute(
                    "UPDATE user_sessions SET refresh_token_id = %s WHERE id = %s",
                    (token.id, session.id),
                )
                session = session.model_copy(update={"refresh_token_id": token.id})

        return User.model_validate(user_row), session

    @staticmethod
    def _user_params(user: User) -> tuple:
        return (
            user.id,
            user.email,
            user.phone,
            user.full_name,
            user.password_hash,
            user.federated_provider,
            user.federated_subject,
            user.role.value,
            user.is_active,
            user.email_verified,
            user.phone_verified,
            user.created_at,
            user.last_login_at,
        )

    @staticmethod
    def _duplicate_field(error: psycopg2.errors.UniqueViolation) -> str:
        constraint = getattr(error.diag, "constraint_name", None) or ""
        if "phone" in constraint:
            return "phone"
        if "federated" in constraint:
            return "federated identity"
        return "email"

    # -------------------------------------------------------------------------
    # Refresh tokens
    # -------------------------------------------------------------------------

    def find_refresh_token(self, token_hash: str) -> RefreshToken | None:
        row = self._db.execute_single(
            f"SELECT {REFRESH_TOKEN_COLUMNS} FROM refresh_tokens WHERE token_hash = %s",
            (token_hash,),
        )
        return RefreshToken.model_validate(row) if row else None

    def get_refresh_token(self, token_id: UUID) -> RefreshToken | None:
        row = self._db.execute_single(
            f"SELECT {REFRESH_TOKEN_COLUMNS} FROM refresh_tokens WHERE id = %s",
            (token_id,),
        )
        return RefreshToken.model_validate(row) if row else None

    def atomic_revoke_and_fetch(
        self,
        token_hash: str,
        reason: RevocationReason,
        now: datetime,
        successor: RefreshToken | None = None,
    ) -> RefreshToken | None:
        """
        Revoke-if-not-revoked and insert the successor in one statement.

        The row lock taken by `prev` serializes concurrent rotations of the
        same token: a waiter re-reads the row after the winner commits and
        sees it revoked.
        """
        row = self._db.execute_single(
            f"""WITH prev AS (
                    SELECT {REFRESH_TOKEN_COLUMNS}
                    FROM refresh_tokens
                    WHERE token_hash = %(token_hash)s
                    FOR UPDATE
                ),
                revoked AS (
                    UPDATE refresh_tokens r
                    SET revoked = true,
                        revoked_at = %(now)s,
                        revoked_reason = %(reason)s,
                        replaced_by = %(successor_id)s::uuid
                    FROM prev
                    WHERE r.id = prev.id
                      AND NOT prev.revoked
                    RETURNING r.id
                ),
                successor AS (
                    INSERT INTO refresh_tokens
                        (id, token_hash, user_id, session_id, created_at, expires_at, revoked)
                    SELECT %(successor_id)s::uuid, %(successor_hash)s, %(successor_user_id)s::uuid,
                           %(successor_session_id)s::uuid, %(successor_created_at)s,
                           %(successor_expires_at)s, false
                    WHERE %(successor_id)s::uuid IS NOT NULL
                      AND EXISTS (SELECT 1 FROM revoked)
                    RETURNING id, session_id
                ),
                relinked AS (
                    UPDATE user_sessions s
                    SET refresh_token_id = successor.id
                    FROM successor
                    WHERE s.id = successor.session_id
                    RETURNING s.id
                )
                SELECT {REFRESH_TOKEN_COLUMNS} FROM prev""",
            {
                "token_hash": token_hash,
                "now": now,
                "reason": reason.value,
                "successor_id": successor.id if successor else None,
                "successor_hash": successor.token_hash if successor else None,
                "successor_user_id": successor.user_id if successor else None,
                "successor_session_id": successor.session_id if successor else None,
                "successor_created_at": successor.created_at if successor else None,
                "successor_expires_at": successor.expires_at if successor else None,
            },
        )
        return RefreshToken.model_validate(row) if row else None

    def insert_refresh_token(self, token: RefreshToken) -> None:
        self._db.execute_returning(
            _INSERT_REFRESH_TOKEN_SQL + " RETURNING id", _refresh_token_params(token)
        )

    def revoke_refresh_tokens_for_user(
        self,
        user_id: UUID,
        reason: RevocationReason,
        now: datetime,
        *,
        session_ids: Collection[UUID] | None = None,
        except_session_ids: Collection[UUID] = (),
    ) -> int:
        conditions = ["user_id = %s", "NOT revoked"]
        params: list = [now, reason.value, user_id]

        if session_ids is not None:
            conditions.append("session_id = ANY(%s::uuid[])")
            params.append(_uuid_list(session_ids))

        if except_session_ids:
            conditions.append("(session_id IS NULL OR NOT (session_id = ANY(%s::uuid[])))")
            params.append(_uuid_list(except_session_ids))

        rows = self._db.execute_returning(
            f"""UPDATE refresh_tokens
                SET revoked = true, revoked_at = %s, revoked_reason = %s
                WHERE {" AND ".join(conditions)}
                RETURNING id""",
            tuple(params),
        )
        return len(rows)

    # -------------------------------------------------------------------------
    # One-time passcodes
    # -------------------------------------------------------------------------

    def find_latest_pending_otp(self, target: str, purpose: OtpPurpose) -> OtpChallenge | None:
        row = self._db.execute_single(
            f"""SELECT {OTP_COLUMNS} FROM otp_challenges
                WHERE target = %s AND purpose = %s AND NOT used
                ORDER BY created_at DESC
                LIMIT 1""",
            (target, purpose.value),
        )
        return OtpChallenge.model_validate(row) if row else None

    def insert_otp(self, challenge: OtpChallenge) -> int:
        with self._db.transaction() as cur:
            cur.execute(
                """UPDATE otp_challenges SET used = true
                   WHERE target = %s AND purpose = %s AND NOT used""",
                (challenge.target, challenge.purpose.value),
            )
            invalidated = cur.rowcount
            cur.execute(
                """INSERT INTO otp_challenges
                       (id, target, purpose, user_id, code_hash, created_at, expires_at,
                        attempts, max_attempts, used, verified_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
                (
                    challenge.id,
                    challenge.target,
                    challenge.purpose.value,
                    challenge.user_id,
                    challenge.code_hash,
                    challenge.created_at,
                    challenge.expires_at,
                    challenge.attempts,
                    challenge.max_attempts,
                    challenge.used,
                    challenge.verified_at,
                ),
            )
        return invalidated

    def atomic_increment_otp_attempts(self, challenge_id: UUID) -> int | None:
        rows = self._db.execute_returning(
            """UPDATE otp_challenges
               SET attempts = attempts + 1
               WHERE id = %s AND NOT used AND attempts < max_attempts
               RETURNING attempts""",
            (challenge_id,),
        )
        return rows[0]["attempts"] if rows else None

    def mark_otp_used(self, challenge_id: UUID) -> bool:
        rows = self._db.execute_returning(
            "UPDATE otp_challenges SET used = true WHERE id = %s AND NOT used RETURNING id",
            (challenge_id,),
        )
        return len(rows) > 0

    def mark_otp_verified(self, challenge_id: UUID, now: datetime) -> bool:
        rows = self._db.execute_returning(
            """UPDATE otp_challenges
               SET used = true, verified_at = %s
               WHERE id = %s AND NOT used
               RETURNING id""",
            (now, challenge_id),
        )
        return len(rows) > 0

    def last_otp_created_at(self, target: str, purpose: OtpPurpose) -> datetime | None:
        row = self._db.execute_single(
            """SELECT max(created_at) AS created_at FROM otp_challenges
               WHERE target = %s AND purpose = %s""",
            (target, purpose.value),
        )
        return row["created_at"] if row else None

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def upsert_session(self, session: Session) -> Session:
        rows = self._db.execute_returning(_UPSERT_SESSION_SQL, _session_params(session))
        return Session.model_validate(rows[0])

    def get_session(self, session_id: UUID) -> Session | None:
        row = self._db.execute_single(
            f"SELECT {SESSION_COLUMNS} FROM user_sessions WHERE id = %s",
            (session_id,),
        )
        return Session.model_validate(row) if row else None

    def get_session_by_device(self, user_id: UUID, device_id: str) -> Session | None:
        row = self._db.execute_single(
            f"""SELECT {SESSION_COLUMNS} FROM user_sessions
                WHERE user_id = %s AND device_id = %s""",
            (user_id, device_id),
        )
        return Session.model_validate(row) if row else None

    def list_active_sessions(self, user_id: UUID) -> list[Session]:
        rows = self._db.execute(
            f"""SELECT {SESSION_COLUMNS} FROM user_sessions
                WHERE user_id = %s AND is_active
                ORDER BY last_activity_at DESC""",
            (user_id,),
        )
        return [Session.model_validate(row) for row in rows]

    def touch_session(self, session_id: UUID, now: datetime) -> bool:
        rows = self._db.execute_returning(
            """UPDATE user_sessions SET last_activity_at = %s
               WHERE id = %s AND is_active
               RETURNING id""",
            (now, session_id),
        )
        return len(rows) > 0

    def revoke_sessions(
        self,
        user_id: UUID,
        *,
        session_ids: Collection[UUID] | None = None,
        except_device_id: str | None = None,
    ) -> list[UUID]:
        conditions = ["user_id = %s", "is_active"]
        params: list = [user_id]

        if session_ids is not None:
            conditions.append("id = ANY(%s::uuid[])")
            params.append(_uuid_list(session_ids))

        if except_device_id is not None:
            conditions.append("device_id <> %s")
            params.append(except_device_id)

        rows = self._db.execute_returning(
            f"""UPDATE user_sessions SET is_active = false
                WHERE {" AND ".join(conditions)}
                RETURNING id""",
            tuple(params),
        )
        return [row["id"] for row in rows]

    # -------------------------------------------------------------------------
    # Trusted devices
    # -------------------------------------------------------------------------

    def upsert_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        rows = self._db.execute_returning(
            f"""INSERT INTO trusted_devices
                    (id, user_id, device_id, custom_name, device_name, device_model,
                     platform, system_version, app_version, is_active, last_used_at, trusted_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, device_id) DO UPDATE SET
                    custom_name = COALESCE(EXCLUDED.custom_name, trusted_devices.custom_name),
                    device_name = EXCLUDED.device_name,
                    device_model = EXCLUDED.device_model,
                    platform = EXCLUDED.platform,
                    system_version = EXCLUDED.system_version,
                    app_version = EXCLUDED.app_version,
                    is_active = EXCLUDED.is_active,
                    last_used_at = EXCLUDED.last_used_at,
                    trusted_at = EXCLUDED.trusted_at
                RETURNING {TRUSTED_DEVICE_COLUMNS}""",
            (
                device.id,
                device.user_id,
                device.device_id,
                device.custom_name,
                device.device_name,
                device.device_model,
                device.platform,
                device.system_version,
                device.app_version,
                device.is_active,
                device.last_used_at,
                device.trusted_at,
            ),
        )
        return TrustedDevice.model_validate(rows[0])

    def get_trusted_device(self, user_id: UUID, device_id: str) -> TrustedDevice | None:
        row = self._db.execute_single(
            f"""SELECT {TRUSTED_DEVICE_COLUMNS} FROM trusted_devices
                WHERE user_id = %s AND device_id = %s AND is_active""",
            (user_id, device_id),
        )
        return TrustedDevice.model_validate(row) if row else None

    def list_trusted_devices(self, user_id: UUID) -> list[TrustedDevice]:
        rows = self._db.execute(
            f"""SELECT {TRUSTED_DEVICE_COLUMNS} FROM trusted_devices
                WHERE user_id = %s AND is_active
                ORDER BY last_used_at DESC""",
            (user_id,),
        )
        return [TrustedDevice.model_validate(row) for row in rows]

    def deactivate_trusted_devices(self, user_id: UUID, device_id: str | None = None) -> int:
        if device_id is None:
            rows = self._db.execute_returning(
                """UPDATE trusted_devices SET is_active = false
                   WHERE user_id = %s AND is_active
                   RETURNING id""",
                (user_id,),
            )
        else:
            rows = self._db.execute_returning(
                """UPDATE trusted_devices SET is_active = false
                   WHERE user_id = %s AND device_id = %s AND is_active
                   RETURNING id""",
                (user_id, device_id),
            )
        return len(rows)

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def purge_expired(
        self,
        now: datetime,
        refresh_token_cutoff: datetime,
        session_cutoff: datetime,
    ) -> dict[str, int]:
        """Delete used/expired passcodes and stale tokens/sessions in one transaction."""
        with self._db.transaction() as cur:
            cur.execute(
                "DELETE FROM otp_challenges WHERE used OR expires_at <= %s",
                (now,),
            )
            otp_count = cur.rowcount
            cur.execute(
                """DELETE FROM refresh_tokens
                   WHERE (revoked AND revoked_at < %s) OR expires_at < %s""",
                (refresh_token_cutoff, refresh_token_cutoff),
            )
            token_count = cur.rowcount
            cur.execute(
                """DELETE FROM user_sessions
                   WHERE NOT is_active AND last_activity_at < %s""",
                (session_cutoff,),
            )
            session_count = cur.rowcount

        counts = {
            "otp_challenges": otp_count,
            "refresh_tokens": token_count,
            "sessions": session_count,
        }
        logger.info(f"Purged expired credentials: {counts}")
        return counts
