"""Security event logging for the auth audit trail.

Events are appended to the security_events table and mirrored to the
application log with contact addresses masked. Old rows can be archived to a
JSON lines file with `rotate_logs`.
"""

import json
import logging
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID

from psycopg2.extras import Json

from clients.postgres_client import PostgresClient
from auth.types import mask_email
from utils.timezone import Clock, now_utc

logger = logging.getLogger(__name__)

_COLUMNS = "id, event_type, email, user_id, ip_address, user_agent, details, created_at"


class SecurityEvent(Enum):
    """Auth security event types."""

    USER_REGISTERED = "user_registered"
    LOGIN_SUCCEEDED = "login_succeeded"
    LOGIN_FAILED = "login_failed"
    FEDERATED_LOGIN = "federated_login"
    OTP_REQUESTED = "otp_requested"
    OTP_VERIFIED = "otp_verified"
    OTP_FAILED = "otp_failed"
    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REUSE_DETECTED = "token_reuse_detected"
    LOGOUT = "logout"
    LOGOUT_EVERYWHERE = "logout_everywhere"
    SESSION_REVOKED = "session_revoked"
    DEVICE_TRUSTED = "device_trusted"
    DEVICE_UNTRUSTED = "device_untrusted"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET = "password_reset"
    RATE_LIMITED = "rate_limited"
    USER_DEACTIVATED = "user_deactivated"
    USER_ACTIVATED = "user_activated"


# Events that also go to the application log at WARNING
_ALARMING = {
    SecurityEvent.LOGIN_FAILED,
    SecurityEvent.OTP_FAILED,
    SecurityEvent.TOKEN_REUSE_DETECTED,
    SecurityEvent.RATE_LIMITED,
}


def _archive_record(row: dict) -> dict:
    """Make a security_events row JSON-serializable."""
    record = dict(row)
    for key in ("id", "user_id", "ip_address"):
        if record.get(key) is not None:
            record[key] = str(record[key])
    record["created_at"] = row["created_at"].isoformat()
    return record


class SecurityLogger:
    """Append-only audit trail of authentication events."""

    def __init__(self, postgres: PostgresClient, clock: Clock = now_utc):
        self._db = postgres
        self._clock = clock

    def log(
        self,
        event: SecurityEvent,
        email: str | None = None,
        user_id: UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        level = logging.WARNING if event in _ALARMING else logging.INFO
        logger.log(level, f"Security event {event.value} user={user_id} email={mask_email(email)}")

        self._db.execute_returning(
            """INSERT INTO security_events
               (event_type, email, user_id, ip_address, user_agent, details, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s)
               RETURNING id""",
            (
                event.value,
                email,
                str(user_id) if user_id else None,
                ip_address,
                user_agent,
                Json(details) if details else None,
                self._clock(),
            ),
        )

    def get_recent_events(
        self,
        email: str | None = None,
        user_id: UUID | None = None,
        event_type: SecurityEvent | None = None,
        limit: int = 100,
    ) -> list[dict]:
        """Newest events first, narrowed by any filters given."""
        filters = [
            ("email", email),
            ("user_id", str(user_id) if user_id else None),
            ("event_type", event_type.value if event_type else None),
        ]
        active = [(column, value) for column, value in filters if value is not None]
        where = " AND ".join(f"{column} = %s" for column, _ in active) or "TRUE"

        return self._db.execute(
            f"SELECT {_COLUMNS} FROM security_events WHERE {where} "
            "ORDER BY created_at DESC LIMIT %s",
            tuple(value for _, value in active) + (limit,),
        )

    def rotate_logs(self, older_than_days: int, output_path: Path) -> int:
        """Move events older than `older_than_days` into a JSON lines archive.

        Returns:
            Number of events archived and deleted
        """
        cutoff = self._clock() - timedelta(days=older_than_days)
        rows = self._db.execute(
            f"SELECT {_COLUMNS} FROM security_events WHERE created_at < %s "
            "ORDER BY created_at ASC",
            (cutoff,),
        )
        if not rows:
            return 0

        with open(output_path, "a") as archive:
            archive.writelines(json.dumps(_archive_record(row)) + "\n" for row in rows)

        self._db.execute_returning(
            "DELETE FROM security_events WHERE id = ANY(%s::uuid[]) RETURNING id",
            ([str(row["id"]) for row in rows],),
        )
        logger.info(f"Archived {len(rows)} security event(s) to {output_path}")
        return len(rows)
