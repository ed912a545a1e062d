"""Unit tests for access token signing and refresh token lifecycle."""

import json
from datetime import timedelta

import pytest

from mentorauth.service.devices import DeviceService, RequestMeta
from mentorauth.service.errors import (
    DeviceMismatchError,
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
)
from mentorauth.service.tokens import TokenService

LAPTOP = RequestMeta(user_agent="Mozilla/5.0 (X11; Linux x86_64) Firefox/125.0", client_ip="203.0.113.10")
PHONE = RequestMeta(user_agent="Mozilla/5.0 (Linux; Android 14) Chrome/124.0 Mobile", client_ip="192.0.2.44")


@pytest.fixture
def token_service(memory_store, settings):
    return TokenService(memory_store, settings)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("grace@example.com", "Grace", "Hopper", role="MENTOR")


@pytest.fixture
def laptop(memory_store, settings, user):
    return DeviceService(memory_store, settings).register_device(user, LAPTOP)


def _tamper(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    service = TokenService(None, None)
    claims = json.loads(service._decode_segment(payload))
    claims.update(changes)
    forged = service._encode_segment(json.dumps(claims).encode())
    return f"{header}.{forged}.{sig}"


class TestAccessTokens:
    def test_claims(self, token_service, user, laptop):
        token = token_service.create_access_token(user, laptop)

        claims = token_service.validate(token)

        assert claims["sub"] == "grace@example.com"
        assert claims["user_id"] == user.id
        assert claims["role"] == "MENTOR"
        assert claims["device_id"] == laptop.id
        assert claims["device_fingerprint"] == laptop.fingerprint
        assert claims["exp"] - claims["iat"] == 15 * 60

    def test_tampered_payload_rejected(self, token_service, user, laptop):
        token = token_service.create_access_token(user, laptop)

        with pytest.raises(InvalidTokenError):
            token_service.validate(_tamper(token, role="ADMIN"))

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "invalid.token.here"])
    def test_malformed_rejected(self, token_service, garbage):
        with pytest.raises(InvalidTokenError):
            token_service.validate(garbage)

    def test_other_secret_rejected(self, token_service, user, laptop, settings):
        token = token_service.create_access_token(user, laptop)
        other = TokenService(None, settings.model_copy(update={"jwt_secret": "another-secret-" * 3}))

        with pytest.raises(InvalidTokenError):
            other.validate(token)

    def test_expired_token(self, token_service, user, laptop):
        token = token_service.create_access_token(user, laptop)
        real_now = token_service._now()
        token_service._now = lambda: real_now + timedelta(minutes=16)

        with pytest.raises(TokenExpiredError):
            token_service.validate(token)

    def test_expired_is_an_invalid_token(self):
        assert issubclass(TokenExpiredError, InvalidTokenError)


class TestIssueAndRefresh:
    def test_pair_shape(self, token_service, user, laptop):
        pair = token_service.issue_token_pair(user, laptop)

        assert pair["token_type"] == "Bearer"
        assert pair["expires_in"] == 15 * 60
        assert pair["device_id"] == laptop.id
        assert pair["refresh_token"]

    def test_new_pair_revokes_previous_for_device(self, token_service, user, laptop, memory_store):
        first = token_service.issue_token_pair(user, laptop)
        second = token_service.issue_token_pair(user, laptop)

        old = memory_store.get_refresh_token(first["refresh_token"])
        assert old.revoked is True
        assert old.revoked_reason == "replaced"
        assert memory_store.get_refresh_token(second["refresh_token"]).revoked is False

    def test_refresh_keeps_refresh_token(self, token_service, user, laptop):
        pair = token_service.issue_token_pair(user, laptop)

        refreshed = token_service.refresh(pair["refresh_token"], LAPTOP)

        assert refreshed["refresh_token"] == pair["refresh_token"]
        assert token_service.validate(refreshed["access_token"])["user_id"] == user.id

    def test_refresh_from_other_device_rejected(self, token_service, user, laptop):
        pair = token_service.issue_token_pair(user, laptop)

        with pytest.raises(DeviceMismatchError):
            token_service.refresh(pair["refresh_token"], PHONE)

    def test_unknown_refresh_token(self, token_service):
        with pytest.raises(InvalidTokenError) as excinfo:
            token_service.refresh("not-a-token", LAPTOP)
        assert excinfo.value.message == "Invalid refresh token"

    def test_expired_refresh_token(self, token_service, user, laptop):
        pair = token_service.issue_token_pair(user, laptop)
        real_now = token_service._now()
        token_service._now = lambda: real_now + timedelta(days=2)

        with pytest.raises(InvalidTokenError) as excinfo:
            token_service.refresh(pair["refresh_token"], LAPTOP)
        assert excinfo.value.message == "Refresh token expired or revoked"


class TestRotate:
    def test_rotate_spends_old_token(self, token_service, user, laptop, memory_store):
        pair = token_service.issue_token_pair(user, laptop)

        rotated = token_service.rotate(pair["refresh_token"], LAPTOP)

        assert rotated["refresh_token"] != pair["refresh_token"]
        assert memory_store.get_refresh_token(pair["refresh_token"]).revoked_reason == "rotated"
        with pytest.raises(InvalidTokenError):
            token_service.rotate(pair["refresh_token"], LAPTOP)

    def test_single_live_token_per_device(self, token_service, user, laptop, memory_store):
        pair = token_service.issue_token_pair(user, laptop)
        token_service.rotate(pair["refresh_token"], LAPTOP)

        live = [
            t
            for t in memory_store.refresh_tokens.values()
            if t.device_id == laptop.id and not t.revoked
        ]
        assert len(live) == 1


class TestRevocation:
    def test_revoke_device_tokens(self, token_service, user, laptop, memory_store):
        pair = token_service.issue_token_pair(user, laptop)

        assert token_service.revoke_device_tokens(laptop.id) == 1
        assert memory_store.get_refresh_token(pair["refresh_token"]).revoked_reason == "logout"
        with pytest.raises(InvalidTokenError):
            token_service.refresh(pair["refresh_token"], LAPTOP)

    def test_revoke_all_covers_every_device(self, token_service, user, laptop, memory_store, settings):
        phone = DeviceService(memory_store, settings).register_device(user, PHONE)
        token_service.issue_token_pair(user, laptop)
        token_service.issue_token_pair(user, phone)

        assert token_service.revoke_all_user_tokens(user.id) == 2
        assert token_service.revoke_all_user_tokens(user.id) == 0

    def test_access_token_survives_revocation(self, token_service, user, laptop):
        """Access tokens are stateless and stay valid until they expire."""
        pair = token_service.issue_token_pair(user, laptop)
        token_service.revoke_all_user_tokens(user.id)

        assert token_service.validate(pair["access_token"])["user_id"] == user.id


class TestRemainingValidityAndCleanup:
    def test_remaining_validity(self, token_service, user, laptop):
        pair = token_service.issue_token_pair(user, laptop)

        remaining = token_service.remaining_validity(pair["refresh_token"])

        assert 24 * 3600 - 5 <= remaining <= 24 * 3600
        token_service.revoke_device_tokens(laptop.id)
        assert token_service.remaining_validity(pair["refresh_token"]) == 0

    def test_remaining_validity_unknown(self, token_service):
        with pytest.raises(NotFoundError):
            token_service.remaining_validity("missing")

    def test_cleanup_deletes_revoked_and_expired(self, token_service, user, laptop, memory_store, settings):
        phone = DeviceService(memory_store, settings).register_device(user, PHONE)
        revoked = token_service.issue_token_pair(user, laptop)
        token_service.revoke_device_tokens(laptop.id)
        live = token_service.issue_token_pair(user, phone)

        assert token_service.cleanup_expired_tokens() == 1
        assert memory_store.get_refresh_token(revoked["refresh_token"]) is None
        assert memory_store.get_refresh_token(live["refresh_token"]) is not None
