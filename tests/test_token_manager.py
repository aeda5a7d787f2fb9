"""
Tests for token storage, expiry and claim decoding.
"""

import base64
import json

import pytest

from caseflow.auth.token_manager import (
    TokenManager, TokenData, decode_unverified_claims,
    ACCESS_TOKEN_KEY, LEGACY_TOKEN_KEY, TOKEN_EXPIRES_AT_KEY
)
from caseflow.exceptions import MalformedTokenError, ErrorCode
from caseflow.storage import MemoryKeyValueStore

from conftest import make_token

NOW_MS = 1_700_000_000_000


def _segment(obj) -> str:
    raw = obj if isinstance(obj, bytes) else json.dumps(obj).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip('=')


class FakeClock:
    def __init__(self, now_ms: int = NOW_MS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(clock):
    return TokenManager(MemoryKeyValueStore(), clock=clock)


class TestTokenData:
    """Test validation of token pairs from the service."""

    def test_from_dict_reads_service_keys(self):
        data = TokenData.from_dict({'accessToken': 'a.b.c', 'refreshToken': 'r.s.t', 'expiresIn': 900})
        assert data.access_token == 'a.b.c'
        assert data.refresh_token == 'r.s.t'
        assert data.expires_in == 900
        assert data.token_type == 'Bearer'

    def test_rejects_empty_access_token(self):
        with pytest.raises(ValueError, match="Access token"):
            TokenData(access_token='', refresh_token='r', expires_in=60)

    def test_rejects_negative_lifetime(self):
        with pytest.raises(ValueError):
            TokenData(access_token='a', refresh_token='r', expires_in=-1)


class TestDecodeUnverifiedClaims:
    """Test claim decoding without signature verification."""

    def test_decodes_standard_claims(self):
        token = make_token(role='supervisor', deviceId='device-9')
        claims = decode_unverified_claims(token)

        assert claims.subject == 'user-1'
        assert claims.role == 'supervisor'
        assert claims.device_id == 'device-9'
        assert claims.audience == 'caseflow-mobile'
        assert isinstance(claims.expires_at, int)

    def test_signature_is_not_checked(self):
        header, payload, _ = make_token().split('.')
        claims = decode_unverified_claims(f"{header}.{payload}.{_segment(b'not-the-signature')}")
        assert claims.subject == 'user-1'

    @pytest.mark.parametrize("token", ["", "only-one-segment", "two.segments", "a.b.c.d"])
    def test_wrong_segment_count(self, token):
        with pytest.raises(MalformedTokenError) as exc_info:
            decode_unverified_claims(token)
        assert exc_info.value.error_code == ErrorCode.TOKEN_MALFORMED

    def test_payload_not_json(self):
        token = f"{_segment({'alg': 'HS256', 'typ': 'JWT'})}.{_segment(b'not json')}.{_segment(b'sig')}"
        with pytest.raises(MalformedTokenError):
            decode_unverified_claims(token)

    def test_payload_not_an_object(self):
        token = f"{_segment({'alg': 'HS256', 'typ': 'JWT'})}.{_segment([1, 2, 3])}.{_segment(b'sig')}"
        with pytest.raises(MalformedTokenError):
            decode_unverified_claims(token)


class TestTokenManager:
    """Test the stored token pair."""

    def test_store_tokens_computes_absolute_expiry(self, manager):
        token_set = manager.store_tokens(TokenData(make_token(), make_token(), expires_in=3600))

        assert token_set.expires_at_ms == NOW_MS + 3_600_000
        assert manager.get_token_expires_at() == NOW_MS + 3_600_000
        assert manager.get_token_set() == token_set

    def test_store_tokens_writes_legacy_alias(self, manager):
        access = make_token()
        manager.store_tokens(TokenData(access, 'refresh', expires_in=60))

        assert manager.store.get(ACCESS_TOKEN_KEY) == access
        assert manager.store.get(LEGACY_TOKEN_KEY) == access

    def test_expired_without_stored_expiry(self, manager):
        assert manager.is_token_expired() is True

    def test_expiry_buffer_boundary(self, manager, clock):
        manager.store_tokens(TokenData('access', 'refresh', expires_in=600))
        expires_at = NOW_MS + 600_000

        clock.now_ms = expires_at - 5 * 60 * 1000 - 1
        assert manager.is_token_expired() is False

        clock.now_ms = expires_at - 5 * 60 * 1000
        assert manager.is_token_expired() is True

    def test_unparseable_expiry_counts_as_expired(self, manager):
        manager.store_tokens(TokenData('access', 'refresh', expires_in=600))
        manager.store.set(TOKEN_EXPIRES_AT_KEY, 'soon')
        assert manager.get_token_expires_at() is None
        assert manager.is_token_expired() is True

    def test_refresh_token_expiry_uses_exp_claim(self, manager, clock):
        refresh = make_token(expires_in=7200)
        manager.store_tokens(TokenData('access', refresh, expires_in=60))
        exp_ms = decode_unverified_claims(refresh).expires_at * 1000

        clock.now_ms = exp_ms - 60 * 60 * 1000 - 1
        assert manager.is_refresh_token_expired() is False

        clock.now_ms = exp_ms - 60 * 60 * 1000
        assert manager.is_refresh_token_expired() is True

    def test_undecodable_refresh_token_is_expired(self, manager):
        manager.store_tokens(TokenData('access', 'opaque-refresh-token', expires_in=60))
        assert manager.is_refresh_token_expired() is True

    def test_roles_fail_closed(self, manager):
        assert manager.has_role('field_agent') is False

        manager.store_tokens(TokenData('not-a-jwt', 'refresh', expires_in=60))
        assert manager.get_user_from_token() is None
        assert manager.has_any_role(['field_agent', 'supervisor']) is False

    def test_roles_from_access_token(self, manager):
        manager.store_tokens(TokenData(make_token(role='field_agent'), 'refresh', expires_in=60))

        assert manager.has_role('field_agent') is True
        assert manager.has_role('admin') is False
        assert manager.has_any_role(['admin', 'field_agent']) is True

    def test_time_remaining_never_negative(self, manager, clock):
        manager.store_tokens(TokenData('access', 'refresh', expires_in=90))
        assert manager.get_time_remaining() == 90

        clock.now_ms += 200_000
        assert manager.get_time_remaining() == 0

    def test_authorization_header(self, manager):
        assert manager.get_authorization_header() is None
        manager.store_tokens(TokenData('abc', 'refresh', expires_in=60, token_type='Bearer'))
        assert manager.get_authorization_header() == 'Bearer abc'
        assert manager.get_token_type() == 'Bearer'

    def test_metadata(self, manager):
        manager.store_tokens(TokenData(make_token(role='field_agent'), make_token(expires_in=86400), expires_in=3600))
        metadata = manager.get_token_metadata()

        assert metadata == {
            'has_access_token': True,
            'has_refresh_token': True,
            'is_access_token_expired': False,
            'is_refresh_token_expired': False,
            'time_remaining': 3600,
            'user_role': 'field_agent',
        }

    def test_clear_tokens_is_idempotent(self, manager):
        manager.store_tokens(TokenData('access', 'refresh', expires_in=60))
        manager.clear_tokens()
        manager.clear_tokens()

        assert manager.get_access_token() is None
        assert manager.get_refresh_token() is None
        assert manager.store.get(LEGACY_TOKEN_KEY) is None
        assert manager.get_token_set() is None
