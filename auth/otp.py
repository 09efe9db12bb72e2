"""One-time passcode challenges.

One challenge entity serves every purpose (login, password reset,
verification, account deletion); per-purpose TTL, length and attempt limits
come from `AuthConfig.otp_policies`.

Codes are stored as an HMAC keyed with the signing key and bound to the
challenge id, so a leaked table does not reveal live codes.
"""

import hashlib
import hmac
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID, uuid4

from auth.config import AuthConfig
from auth.exceptions import OtpFailure, OtpVerificationError, RateLimitedError
from auth.store import CredentialStore
from auth.types import OtpChallenge, OtpPurpose, mask_target
from utils.timezone import Clock, now_utc, seconds_until

logger = logging.getLogger(__name__)

_PHONE_NOISE = re.compile(r"[\s\-().]")


def normalize_target(target: str) -> str:
    """Lowercase emails; strip formatting characters from phone numbers."""
    target = target.strip()
    if "@" in target:
        return target.lower()
    return _PHONE_NOISE.sub("", target)


@dataclass
class IssuedChallenge:
    """A stored challenge plus the clear code, which exists only here."""

    challenge: OtpChallenge
    code: str

    @property
    def expires_in_seconds(self) -> int:
        return int((self.challenge.expires_at - self.challenge.created_at).total_seconds())


class OtpChallengeEngine:
    """Create and verify short-lived numeric challenges."""

    def __init__(self, store: CredentialStore, config: AuthConfig, clock: Clock = now_utc):
        self._store = store
        self._config = config
        self._clock = clock

    def _hash_code(self, challenge_id: UUID, code: str) -> str:
        return hmac.new(
            self._config.signing_key.encode("utf-8"),
            f"{challenge_id}:{code}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    @staticmethod
    def _generate_code(length: int) -> str:
        return f"{secrets.randbelow(10 ** length):0{length}d}"

    def create(
        self,
        target: str,
        purpose: OtpPurpose,
        user_id: UUID | None = None,
    ) -> IssuedChallenge:
        """Issue a new challenge, invalidating any pending one for (target, purpose).

        Raises:
            RateLimitedError: A challenge was issued within the resend cooldown.
        """
        target = normalize_target(target)
        policy = self._config.otp_policy(purpose)
        now = self._clock()

        if policy.resend_cooldown_seconds:
            last_created = self._store.last_otp_created_at(target, purpose)
            if last_created is not None:
                available_at = last_created + timedelta(seconds=policy.resend_cooldown_seconds)
                if now < available_at:
                    raise RateLimitedError(retry_after_seconds=max(seconds_until(available_at, now), 1))

        code = self._generate_code(policy.code_length)
        challenge_id = uuid4()
        challenge = OtpChallenge(
            id=challenge_id,
            target=target,
            purpose=purpose,
            user_id=user_id,
            code_hash=self._hash_code(challenge_id, code),
            created_at=now,
            expires_at=now + timedelta(minutes=policy.ttl_minutes),
            attempts=0,
            max_attempts=policy.max_attempts,
            used=False,
        )
        invalidated = self._store.insert_otp(challenge)
        logger.info(
            f"OTP challenge ({purpose.value}) created for {mask_target(target)}, "
            f"{invalidated} pending challenge(s) invalidated"
        )
        return IssuedChallenge(challenge=challenge, code=code)

    def verify(self, target: str, purpose: OtpPurpose, code: str) -> OtpChallenge:
        """
        Check a supplied code against the latest pending challenge.

        The attempt is counted before the comparison, so with max_attempts=N
        the first N wrong codes report MISMATCH and the next reports EXHAUSTED.

        Returns:
            The consumed challenge.

        Raises:
            OtpVerificationError: NOT_FOUND, EXPIRED, EXHAUSTED or MISMATCH.
        """
        target = normalize_target(target)
        now = self._clock()

        challenge = self._store.find_latest_pending_otp(target, purpose)
        if challenge is None:
            raise OtpVerificationError(OtpFailure.NOT_FOUND)

        if challenge.is_expired(now):
            self._store.mark_otp_used(challenge.id)
            raise OtpVerificationError(OtpFailure.EXPIRED)

        attempts = self._store.atomic_increment_otp_attempts(challenge.id)
        if attempts is None:
            latest = self._store.find_latest_pending_otp(target, purpose)
            if latest is None or latest.id != challenge.id:
                raise OtpVerificationError(OtpFailure.NOT_FOUND)
            logger.warning(f"OTP attempts exhausted ({purpose.value}) for {mask_target(target)}")
            raise OtpVerificationError(OtpFailure.EXHAUSTED)

        if not hmac.compare_digest(self._hash_code(challenge.id, code), challenge.code_hash):
            raise OtpVerificationError(
                OtpFailure.MISMATCH,
                remaining_attempts=max(challenge.max_attempts - attempts, 0),
            )

        if not self._store.mark_otp_verified(challenge.id, now):
            raise OtpVerificationError(OtpFailure.NOT_FOUND)

        logger.info(f"OTP challenge ({purpose.value}) verified for {mask_target(target)}")
        return challenge.model_copy(update={"attempts": attempts, "used": True, "verified_at": now})
