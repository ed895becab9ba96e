"""Tests for JWT identity tokens."""
from datetime import timedelta

from jose import jwt

from civicmap.core.config import settings
from civicmap.domain.services.identity import InMemoryIdentityProvider
from civicmap.domain.services.security import create_access_token, identity_from_token, is_agent, verify_token


def test_round_trip_identity():
    token = create_access_token("uid-1", display_name="Lou", photo_url="https://example.org/lou.png")
    identity = identity_from_token(token)
    assert identity.uid == "uid-1"
    assert identity.display_name == "Lou"
    assert identity.photo_url == "https://example.org/lou.png"


def test_expired_token_rejected():
    token = create_access_token("uid-1", expires_delta=timedelta(seconds=-5))
    assert verify_token(token) is None
    assert identity_from_token(token) is None


def test_wrong_secret_rejected():
    token = jwt.encode({"sub": "uid-1", "type": "access"}, "x" * 40, algorithm=settings.JWT_ALGORITHM)
    assert verify_token(token) is None


def test_wrong_token_type_rejected():
    token = jwt.encode({"sub": "uid-1", "type": "refresh"}, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    assert verify_token(token) is None
    assert verify_token(token, token_type="refresh")["sub"] == "uid-1"


def test_missing_subject_rejected():
    token = jwt.encode({"type": "access"}, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    assert verify_token(token) is None


def test_garbage_token():
    assert identity_from_token("not.a.token") is None


def test_is_agent_follows_configured_uids(monkeypatch):
    monkeypatch.setattr(settings, "AGENT_UIDS", ["agent-1"])
    assert is_agent("agent-1")
    assert not is_agent("citizen-1")


class TestInMemoryIdentityProvider:

    def test_from_token(self):
        provider = InMemoryIdentityProvider.from_token(create_access_token("uid-1"))
        assert provider.current_user().uid == "uid-1"

    def test_from_invalid_token_starts_signed_out(self):
        assert InMemoryIdentityProvider.from_token("bad").current_user() is None

    def test_auth_change_callbacks(self):
        provider = InMemoryIdentityProvider()
        seen = []
        unsubscribe = provider.on_auth_change(seen.append)

        token_identity = identity_from_token(create_access_token("uid-2"))
        provider.sign_in(token_identity)
        provider.sign_out()
        unsubscribe()
        unsubscribe()
        provider.sign_in(token_identity)

        assert [u.uid if u else None for u in seen] == ["uid-2", None]
