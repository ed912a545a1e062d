"""Unit tests for one-time password issuance and verification."""

from datetime import datetime, timedelta, timezone

import pytest

from mentorauth.config import Settings
from mentorauth.service.errors import CooldownActiveError, TooManyAttemptsError
from mentorauth.service.otp import OtpService
from mentorauth.storage.models import OtpType

EMAIL = "learner@example.com"


@pytest.fixture
def otp_service(memory_store, settings):
    return OtpService(memory_store, settings)


@pytest.fixture
def clock(otp_service):
    """Freeze the service clock; advance with ``clock.advance(seconds=...)``."""

    class Clock:
        def __init__(self):
            self.now = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

        def advance(self, **delta):
            self.now += timedelta(**delta)

    frozen = Clock()
    otp_service._now = lambda: frozen.now
    return frozen


def _wrong(code: str) -> str:
    return "0" * len(code) if code != "0" * len(code) else "1" * len(code)


class TestGenerate:
    def test_code_is_numeric_with_configured_length(self, otp_service):
        code = otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)

        assert code.isdigit()
        assert len(code) == 6

    def test_code_persisted_as_latest_unverified(self, otp_service, memory_store):
        code = otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)

        record = memory_store.get_latest_unverified_otp(EMAIL, OtpType.EMAIL_VERIFICATION)
        assert record is not None
        assert record.code == code
        assert record.attempts == 0
        assert (record.expires_at - record.created_at) == timedelta(minutes=5)

    def test_resend_within_cooldown_rejected(self, otp_service, clock):
        """A second request inside the cooldown window raises CooldownActive."""
        otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)
        clock.advance(seconds=30)

        with pytest.raises(CooldownActiveError):
            otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)

    def test_resend_after_cooldown_supersedes_old_code(self, otp_service, clock):
        first = otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)
        clock.advance(seconds=61)
        second = otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)

        if first != second:
            assert otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, first) is False
        assert otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, second) is True

    def test_cooldown_is_scoped_per_type(self, otp_service):
        otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)

        # Different purpose for the same identifier is not throttled
        assert otp_service.generate(EMAIL, OtpType.LOGIN)

    def test_generate_while_locked_raises(self, otp_service, clock):
        code = otp_service.generate(EMAIL, OtpType.LOGIN)
        for _ in range(2):
            otp_service.verify(EMAIL, OtpType.LOGIN, _wrong(code))
        with pytest.raises(TooManyAttemptsError):
            otp_service.verify(EMAIL, OtpType.LOGIN, _wrong(code))

        clock.advance(minutes=2)
        with pytest.raises(TooManyAttemptsError):
            otp_service.generate(EMAIL, OtpType.LOGIN)


class TestVerify:
    def test_correct_code_verifies_once(self, otp_service):
        code = otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)

        assert otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, code) is True
        # Verified records are no longer candidates
        assert otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, code) is False

    def test_missing_record_returns_false(self, otp_service):
        assert otp_service.verify("nobody@example.com", OtpType.LOGIN, "123456") is False

    def test_wrong_code_counts_attempt(self, otp_service, memory_store):
        code = otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)

        assert otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, _wrong(code)) is False
        record = memory_store.get_latest_unverified_otp(EMAIL, OtpType.EMAIL_VERIFICATION)
        assert record.attempts == 1
        assert record.locked_until is None

    def test_attempt_reaching_max_locks_even_with_correct_code(self, otp_service, memory_store):
        code = otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)
        otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, _wrong(code))
        otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, _wrong(code))

        with pytest.raises(TooManyAttemptsError):
            otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, code)

        record = memory_store.get_latest_unverified_otp(EMAIL, OtpType.EMAIL_VERIFICATION)
        assert record.attempts == 3
        assert record.locked_until is not None
        assert record.verified is False

    def test_locked_record_rejects_correct_code(self, otp_service, clock):
        code = otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)
        for _ in range(2):
            otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, _wrong(code))
        with pytest.raises(TooManyAttemptsError):
            otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, _wrong(code))

        clock.advance(minutes=1)
        with pytest.raises(TooManyAttemptsError):
            otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, code)

    def test_lock_lasts_configured_minutes(self, otp_service, memory_store, clock):
        code = otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)
        for _ in range(2):
            otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, _wrong(code))
        with pytest.raises(TooManyAttemptsError):
            otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, _wrong(code))

        record = memory_store.get_latest_unverified_otp(EMAIL, OtpType.EMAIL_VERIFICATION)
        assert record.locked_until == clock.now + timedelta(minutes=10)

    def test_expired_code_returns_false_without_consuming_attempt(
        self, otp_service, memory_store, clock
    ):
        code = otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)
        otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, _wrong(code))
        otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, _wrong(code))
        clock.advance(minutes=6)

        # One attempt short of the max, but expiry wins and nothing is counted
        assert otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, code) is False
        record = memory_store.get_latest_unverified_otp(EMAIL, OtpType.EMAIL_VERIFICATION)
        assert record.attempts == 2
        assert record.locked_until is None

    def test_fifth_wrong_attempt_locks_with_five_attempt_budget(self, memory_store):
        service = OtpService(
            memory_store, Settings(jwt_secret="x" * 40, otp_max_attempts=5)
        )
        code = service.generate("+15551234567", OtpType.MOBILE_VERIFICATION)
        for _ in range(4):
            assert service.verify("+15551234567", OtpType.MOBILE_VERIFICATION, _wrong(code)) is False

        with pytest.raises(TooManyAttemptsError):
            service.verify("+15551234567", OtpType.MOBILE_VERIFICATION, _wrong(code))


class TestVerifiedSinceAndPurge:
    def test_verified_since_window(self, otp_service, clock):
        code = otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)
        otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, code)

        assert otp_service.verified_since(EMAIL, OtpType.EMAIL_VERIFICATION, 30) is True
        clock.advance(minutes=31)
        assert otp_service.verified_since(EMAIL, OtpType.EMAIL_VERIFICATION, 30) is False

    def test_purge_removes_expired_but_keeps_locked(self, otp_service, memory_store, clock):
        otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)
        locked_code = otp_service.generate("other@example.com", OtpType.LOGIN)
        for _ in range(2):
            otp_service.verify("other@example.com", OtpType.LOGIN, _wrong(locked_code))
        with pytest.raises(TooManyAttemptsError):
            otp_service.verify("other@example.com", OtpType.LOGIN, _wrong(locked_code))

        clock.advance(minutes=6)
        removed = otp_service.purge_expired()

        assert removed == 1
        assert memory_store.get_latest_unverified_otp(EMAIL, OtpType.EMAIL_VERIFICATION) is None
        assert memory_store.get_latest_unverified_otp("other@example.com", OtpType.LOGIN) is not None

    def test_purge_keeps_verified_signup_code_inside_window(self, otp_service, memory_store, clock):
        code = otp_service.generate(EMAIL, OtpType.EMAIL_VERIFICATION)
        otp_service.verify(EMAIL, OtpType.EMAIL_VERIFICATION, code)

        clock.advance(minutes=6)
        assert otp_service.purge_expired() == 0
        assert otp_service.verified_since(EMAIL, OtpType.EMAIL_VERIFICATION, 30) is True

        clock.advance(minutes=25)
        assert otp_service.purge_expired() == 1
        assert memory_store.otps == {}
