from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from mentorauth.config import Settings
from mentorauth.logging import get_logger, mask_identifier, mask_secret
from mentorauth.service.errors import CooldownActiveError, TooManyAttemptsError
from mentorauth.storage.models import OtpRecord, OtpType

logger = get_logger(__name__)


class OtpService:
    """Issues and verifies short numeric one-time passwords.

    Codes are scoped to an (identifier, type) pair. Only the most recent
    unverified code for a pair is ever checked; older ones are dead once a
    newer one exists. A pair is throttled by a resend cooldown and locked for
    a while after too many wrong guesses.
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _new_code(self) -> str:
        length = self.settings.otp_length
        low = 10 ** (length - 1)
        return str(low + secrets.randbelow(9 * low))

    def generate(self, identifier: str, otp_type: OtpType) -> str:
        """Create and persist a code for ``identifier``; returns the plaintext code.

        Raises:
            TooManyAttemptsError: the latest code for this pair is locked.
            CooldownActiveError: a code was issued within the resend cooldown.
        """
        otp_type = OtpType(otp_type)
        now = self._now()
        latest = self.store.get_latest_unverified_otp(identifier, otp_type)
        if latest is not None and latest.is_locked(now):
            logger.warning(
                "otp_generate_while_locked",
                identifier=mask_identifier(identifier),
                otp_type=otp_type.value,
                locked_until=latest.locked_until.isoformat(),
            )
            raise TooManyAttemptsError(
                "Too many failed attempts. Please try again later.",
                detail={"locked_until": latest.locked_until.isoformat()},
            )

        code = self._new_code()
        record = OtpRecord.new(
            identifier,
            code,
            otp_type,
            expiry_minutes=self.settings.otp_expiry_minutes,
            now=now,
        )
        cooldown = timedelta(seconds=self.settings.otp_resend_cooldown_seconds)
        if not self.store.insert_otp_unless_recent(record, now - cooldown):
            logger.info(
                "otp_cooldown_active",
                identifier=mask_identifier(identifier),
                otp_type=otp_type.value,
            )
            raise CooldownActiveError(
                "Please wait before requesting a new OTP",
                detail={"retry_after_seconds": self.settings.otp_resend_cooldown_seconds},
            )

        logger.info(
            "otp_generated",
            identifier=mask_identifier(identifier),
            otp_type=otp_type.value,
            preview=mask_secret(code, reveal=self.settings.is_development),
            expires_at=record.expires_at.isoformat(),
        )
        return code

    def verify(self, identifier: str, otp_type: OtpType, code: str) -> bool:
        """Check ``code`` against the latest unverified code for the pair.

        Returns False for a missing, expired or wrong code. The attempt that
        reaches the maximum locks the pair and raises ``TooManyAttemptsError``,
        as does any attempt while the lock is in force. Expired codes do not
        consume an attempt.
        """
        otp_type = OtpType(otp_type)
        now = self._now()
        locked_until: Optional[datetime] = None
        matched = False

        with self.store.lock_latest_otp(identifier, otp_type) as record:
            if record is None:
                logger.info(
                    "otp_verify_no_record",
                    identifier=mask_identifier(identifier),
                    otp_type=otp_type.value,
                )
                return False
            if record.is_locked(now):
                locked_until = record.locked_until
            elif record.is_expired(now):
                logger.info(
                    "otp_verify_expired",
                    identifier=mask_identifier(identifier),
                    otp_type=otp_type.value,
                )
                return False
            else:
                record.attempts += 1
                if record.attempts >= self.settings.otp_max_attempts:
                    locked_until = now + timedelta(
                        minutes=self.settings.otp_lockout_minutes
                    )
                    record.locked_until = locked_until
                    logger.warning(
                        "otp_locked",
                        identifier=mask_identifier(identifier),
                        otp_type=otp_type.value,
                        attempts=record.attempts,
                    )
                elif hmac.compare_digest(record.code.encode(), (code or "").encode()):
                    record.verified = True
                    record.verified_at = now
                    matched = True

        # Raised outside the block so the lock above is persisted first
        if locked_until is not None:
            raise TooManyAttemptsError(
                "Too many failed attempts. Please try again later.",
                detail={"locked_until": locked_until.isoformat()},
            )
        logger.info(
            "otp_verified" if matched else "otp_verify_mismatch",
            identifier=mask_identifier(identifier),
            otp_type=otp_type.value,
        )
        return matched

    def verified_since(
        self, identifier: str, otp_type: OtpType, window_minutes: int
    ) -> bool:
        """True when a code for the pair was verified within the last ``window_minutes``."""
        since = self._now() - timedelta(minutes=window_minutes)
        return (
            self.store.get_latest_verified_otp(identifier, OtpType(otp_type), since)
            is not None
        )

    def purge_expired(self) -> int:
        """Delete expired codes, keeping signup verifications still inside their window."""
        now = self._now()
        keep_since = now - timedelta(minutes=self.settings.signup_verification_window_minutes)
        removed = self.store.delete_expired_otps(now, keep_verified_since=keep_since)
        if removed:
            logger.info("otp_purged", removed=removed)
        return removed
