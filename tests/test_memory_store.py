"""MemoryStore behaviour, including its JSON snapshot across restarts."""

from datetime import datetime, timedelta, timezone

import pytest

from mentorauth.storage.errors import DuplicateRecord
from mentorauth.storage.memory import MemoryStore
from mentorauth.storage.models import OtpRecord, OtpType, RefreshToken


def _now():
    return datetime.now(timezone.utc)


class TestUsers:
    def test_email_normalized_and_unique(self, memory_store):
        user = memory_store.create_user("  Ada@Example.COM ", "Ada", "Lovelace")

        assert user.email == "ada@example.com"
        assert memory_store.exists_by_email("ADA@example.com")
        with pytest.raises(DuplicateRecord) as excinfo:
            memory_store.create_user("ada@example.com", "Other", "Ada")
        assert excinfo.value.field == "email"

    def test_credential_stored_with_user(self, memory_store):
        user = memory_store.create_user(
            "cred@example.com", "Cr", "Ed", credential=("hash", "argon2id")
        )

        assert memory_store.get_password_record(user.id) == ("hash", "argon2id")

    def test_failed_write_leaves_no_user_or_credential(self, memory_store, monkeypatch):
        def fail():
            raise RuntimeError("failed to persist in-memory state: disk full")

        monkeypatch.setattr(memory_store, "_persist_state", fail)
        with pytest.raises(RuntimeError):
            memory_store.create_user(
                "half@example.com", "Ha", "Lf", credential=("hash", "argon2id")
            )

        assert not memory_store.exists_by_email("half@example.com")
        assert memory_store.credentials == {}

    def test_failed_attempts_and_lock(self, memory_store):
        memory_store.create_user("lock@example.com", "Lo", "Ck")
        now = _now()

        assert memory_store.increment_failed_attempts("lock@example.com", now) == 1
        assert memory_store.increment_failed_attempts("lock@example.com", now) == 2
        memory_store.lock_account("lock@example.com", now + timedelta(minutes=15))
        user = memory_store.get_user_by_email("lock@example.com")
        assert user.is_locked(now)

        memory_store.reset_failed_attempts("lock@example.com")
        user = memory_store.get_user_by_email("lock@example.com")
        assert user.failed_login_attempts == 0
        assert not user.is_locked(now)

    def test_unknown_email_counts_nothing(self, memory_store):
        assert memory_store.increment_failed_attempts("ghost@example.com", _now()) == 0


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user(
            "persist@example.com",
            "Per",
            "Sist",
            phone_number="+15550001111",
            credential=("hash", "argon2id"),
        )
        device = store.upsert_device(
            user.id, "fp-1", name="Chrome on Linux", user_agent="ua", ip_address="10.0.0.1", at=_now()
        )
        token = store.replace_device_refresh_token(
            RefreshToken.new(user.id, device.id, ttl_minutes=60)
        )
        store.insert_otp_unless_recent(
            OtpRecord.new("persist@example.com", "123456", OtpType.LOGIN, expiry_minutes=5),
            _now() - timedelta(seconds=60),
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))

        again = reloaded.get_user_by_email("persist@example.com")
        assert again.id == user.id
        assert again.created_at.tzinfo is not None
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
        assert reloaded.get_device_by_fingerprint(user.id, "fp-1").id == device.id
        assert reloaded.get_refresh_token(token.token).device_id == device.id
        otp = reloaded.get_latest_unverified_otp("persist@example.com", OtpType.LOGIN)
        assert otp.code == "123456"
        assert otp.otp_type is OtpType.LOGIN


class TestOtps:
    def test_insert_respects_cooldown(self, memory_store):
        now = _now()
        first = OtpRecord.new("a@example.com", "111111", OtpType.LOGIN, expiry_minutes=5, now=now)
        second = OtpRecord.new(
            "a@example.com", "222222", OtpType.LOGIN, expiry_minutes=5, now=now + timedelta(seconds=10)
        )

        assert memory_store.insert_otp_unless_recent(first, now - timedelta(seconds=60))
        assert not memory_store.insert_otp_unless_recent(
            second, second.created_at - timedelta(seconds=60)
        )
        assert memory_store.get_latest_unverified_otp("a@example.com", OtpType.LOGIN).code == "111111"

    def test_cooldown_is_per_type(self, memory_store):
        now = _now()
        since = now - timedelta(seconds=60)
        login = OtpRecord.new("a@example.com", "111111", OtpType.LOGIN, expiry_minutes=5, now=now)
        verify = OtpRecord.new(
            "a@example.com", "222222", OtpType.EMAIL_VERIFICATION, expiry_minutes=5, now=now
        )

        assert memory_store.insert_otp_unless_recent(login, since)
        assert memory_store.insert_otp_unless_recent(verify, since)

    def test_lock_block_discards_changes_on_error(self, memory_store):
        now = _now()
        memory_store.insert_otp_unless_recent(
            OtpRecord.new("b@example.com", "333333", OtpType.LOGIN, expiry_minutes=5, now=now),
            now - timedelta(seconds=60),
        )

        with pytest.raises(RuntimeError):
            with memory_store.lock_latest_otp("b@example.com", OtpType.LOGIN) as record:
                record.attempts = 99
                raise RuntimeError("abort")

        assert memory_store.get_latest_unverified_otp("b@example.com", OtpType.LOGIN).attempts == 0

    def test_purge_keeps_locked_records(self, memory_store):
        past = _now() - timedelta(minutes=30)
        expired = OtpRecord.new("c@example.com", "1", OtpType.LOGIN, expiry_minutes=5, now=past)
        locked = OtpRecord.new("d@example.com", "2", OtpType.LOGIN, expiry_minutes=5, now=past)
        locked.locked_until = _now() + timedelta(minutes=5)
        memory_store.insert_otp_unless_recent(expired, past - timedelta(seconds=60))
        memory_store.insert_otp_unless_recent(locked, past - timedelta(seconds=60))

        assert memory_store.delete_expired_otps(_now()) == 1
        assert memory_store.get_latest_unverified_otp("d@example.com", OtpType.LOGIN) is not None


class TestDevicesAndTokens:
    def _user_device(self, store, fingerprint="fp"):
        user = store.get_user_by_email("dev@example.com") or store.create_user(
            "dev@example.com", "De", "Vice"
        )
        device = store.upsert_device(
            user.id, fingerprint, name="Firefox on Linux", user_agent="ua", ip_address=None, at=_now()
        )
        return user, device

    def test_upsert_reuses_fingerprint(self, memory_store):
        user, first = self._user_device(memory_store)
        memory_store.set_device_active(first.id, False)

        _, again = self._user_device(memory_store)

        assert again.id == first.id
        assert again.is_active
        assert memory_store.count_active_devices(user.id) == 1

    def test_one_live_token_per_device(self, memory_store):
        user, device = self._user_device(memory_store)
        old = memory_store.replace_device_refresh_token(RefreshToken.new(user.id, device.id, ttl_minutes=60))
        new = memory_store.replace_device_refresh_token(RefreshToken.new(user.id, device.id, ttl_minutes=60))

        assert memory_store.get_refresh_token(old.token).revoked
        assert memory_store.get_refresh_token(old.token).revoked_reason == "replaced"
        assert not memory_store.get_refresh_token(new.token).revoked

    def test_revoke_if_active_only_once(self, memory_store):
        user, device = self._user_device(memory_store)
        token = memory_store.replace_device_refresh_token(RefreshToken.new(user.id, device.id, ttl_minutes=60))

        assert memory_store.revoke_refresh_token_if_active(token.token, "rotated", _now())
        assert not memory_store.revoke_refresh_token_if_active(token.token, "rotated", _now())

    def test_streaming_slot_is_exclusive(self, memory_store):
        user, first = self._user_device(memory_store, "fp-a")
        _, second = self._user_device(memory_store, "fp-b")

        assert memory_store.start_streaming(user.id, first.id, 1) == []
        blocking = memory_store.start_streaming(user.id, second.id, 1)
        assert [d.id for d in blocking] == [first.id]

        assert memory_store.stop_streaming(user.id, first.id)
        assert memory_store.start_streaming(user.id, second.id, 1) == []

    def test_deactivating_device_stops_stream(self, memory_store):
        user, device = self._user_device(memory_store)
        memory_store.start_streaming(user.id, device.id, 1)

        memory_store.set_device_active(device.id, False)

        assert not memory_store.get_device(device.id).is_streaming

    def test_cleanup_drops_revoked_and_expired(self, memory_store):
        user, device = self._user_device(memory_store)
        expired = RefreshToken.new(
            user.id, device.id, ttl_minutes=1, now=_now() - timedelta(hours=1)
        )
        memory_store.replace_device_refresh_token(expired)
        live = memory_store.replace_device_refresh_token(RefreshToken.new(user.id, device.id, ttl_minutes=60))

        assert memory_store.delete_expired_or_revoked_refresh_tokens(_now()) == 1
        assert memory_store.get_refresh_token(expired.token) is None
        assert memory_store.get_refresh_token(live.token) is not None
