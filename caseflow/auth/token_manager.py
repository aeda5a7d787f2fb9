"""
Token lifecycle management for the CaseFlow client.

Stores the access/refresh token pair in the local key/value store, decodes
token claims (without verifying signatures) and answers expiry and role
questions.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Callable, Iterable

from jose import jwt, JWTError

from caseflow.exceptions import MalformedTokenError
from caseflow.interfaces import KeyValueStore

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = 'access_token'
REFRESH_TOKEN_KEY = 'refresh_token'
TOKEN_EXPIRES_AT_KEY = 'token_expires_at'
TOKEN_TYPE_KEY = 'token_type'
# Older releases stored the bearer token under this key only
LEGACY_TOKEN_KEY = 'auth_token'

TOKEN_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, TOKEN_EXPIRES_AT_KEY, TOKEN_TYPE_KEY, LEGACY_TOKEN_KEY)

ACCESS_TOKEN_EXPIRY_BUFFER_MS = 5 * 60 * 1000
REFRESH_TOKEN_EXPIRY_BUFFER_MS = 60 * 60 * 1000


def _epoch_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class TokenData:
    """Token pair as returned by the login and refresh endpoints."""
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def __post_init__(self):
        if not self.access_token:
            raise ValueError("Access token cannot be empty")
        if self.expires_in is None or int(self.expires_in) < 0:
            raise ValueError("expires_in must be a non-negative number of seconds")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TokenData':
        return cls(
            access_token=data['accessToken'],
            refresh_token=data.get('refreshToken') or '',
            expires_in=int(data.get('expiresIn', 0)),
            token_type=data.get('tokenType') or 'Bearer'
        )


@dataclass
class TokenSet:
    """Persisted credential state; expiry is fixed when the pair is stored."""
    access_token: str
    refresh_token: str
    token_type: str
    expires_at_ms: int


@dataclass
class DecodedClaims:
    """Claims read from a token payload. Never verified, never persisted."""
    subject: Optional[str] = None
    issued_at: Optional[int] = None
    expires_at: Optional[int] = None
    audience: Optional[Any] = None
    issuer: Optional[str] = None
    role: Optional[str] = None
    device_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> 'DecodedClaims':
        known = {'sub', 'iat', 'exp', 'aud', 'iss', 'role', 'deviceId'}
        return cls(
            subject=claims.get('sub'),
            issued_at=claims.get('iat'),
            expires_at=claims.get('exp'),
            audience=claims.get('aud'),
            issuer=claims.get('iss'),
            role=claims.get('role'),
            device_id=claims.get('deviceId'),
            extra={k: v for k, v in claims.items() if k not in known}
        )


def decode_unverified_claims(token: str) -> DecodedClaims:
    """
    Decode the payload segment of a token WITHOUT verifying its signature.

    The result is only suitable for client-side hints (expiry, display role);
    the server remains the authority on whether a token is valid.

    Raises:
        MalformedTokenError: token is not three dot-separated segments or the
            payload is not a base64url-encoded JSON object
    """
    if not isinstance(token, str) or token.count('.') != 2:
        raise MalformedTokenError("Token must have three segments")

    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as e:
        raise MalformedTokenError(f"Cannot decode token claims: {e}", cause=e) from e

    return DecodedClaims.from_claims(claims)


class TokenManager:
    """
    Owns the stored token pair.

    All methods are synchronous: the key/value store is local, so a read and
    the write that follows it cannot interleave with another coroutine.
    """

    def __init__(self, store: KeyValueStore, clock: Callable[[], int] = _epoch_ms):
        self.store = store
        self.clock = clock

    def store_tokens(self, token_data: TokenData) -> TokenSet:
        """
        Persist a token pair and compute its absolute expiry.

        Raises:
            PersistenceError: the store rejected the write
        """
        token_set = TokenSet(
            access_token=token_data.access_token,
            refresh_token=token_data.refresh_token,
            token_type=token_data.token_type or 'Bearer',
            expires_at_ms=self.clock() + int(token_data.expires_in) * 1000
        )

        self.store.set_many({
            ACCESS_TOKEN_KEY: token_set.access_token,
            REFRESH_TOKEN_KEY: token_set.refresh_token,
            TOKEN_EXPIRES_AT_KEY: token_set.expires_at_ms,
            TOKEN_TYPE_KEY: token_set.token_type,
            LEGACY_TOKEN_KEY: token_set.access_token,
        })

        logger.debug(f"Stored tokens expiring at {token_set.expires_at_ms}")
        return token_set

    def get_access_token(self) -> Optional[str]:
        return self.store.get(ACCESS_TOKEN_KEY)

    def get_refresh_token(self) -> Optional[str]:
        return self.store.get(REFRESH_TOKEN_KEY)

    def get_token_type(self) -> str:
        return self.store.get(TOKEN_TYPE_KEY) or 'Bearer'

    def get_token_expires_at(self) -> Optional[int]:
        value = self.store.get(TOKEN_EXPIRES_AT_KEY)
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unparseable token expiry: {value!r}")
            return None

    def get_token_set(self) -> Optional[TokenSet]:
        access_token = self.get_access_token()
        expires_at = self.get_token_expires_at()
        if not access_token or expires_at is None:
            return None
        return TokenSet(
            access_token=access_token,
            refresh_token=self.get_refresh_token() or '',
            token_type=self.get_token_type(),
            expires_at_ms=expires_at
        )

    def is_token_expired(self) -> bool:
        """True within five minutes of expiry, or when no expiry is stored."""
        expires_at = self.get_token_expires_at()
        if expires_at is None:
            return True
        return self.clock() >= expires_at - ACCESS_TOKEN_EXPIRY_BUFFER_MS

    def is_refresh_token_expired(self) -> bool:
        """Checks the refresh token's own exp claim with a one hour buffer."""
        refresh_token = self.get_refresh_token()
        if not refresh_token:
            return True

        try:
            claims = decode_unverified_claims(refresh_token)
        except MalformedTokenError as e:
            logger.debug(f"Refresh token not decodable, treating as expired: {e}")
            return True

        if not isinstance(claims.expires_at, (int, float)):
            return True

        return self.clock() >= int(claims.expires_at * 1000) - REFRESH_TOKEN_EXPIRY_BUFFER_MS

    def get_user_from_token(self) -> Optional[DecodedClaims]:
        access_token = self.get_access_token()
        if not access_token:
            return None
        try:
            return decode_unverified_claims(access_token)
        except MalformedTokenError as e:
            logger.warning(f"Stored access token is malformed: {e}")
            return None

    def has_role(self, role: str) -> bool:
        claims = self.get_user_from_token()
        return bool(claims and claims.role and claims.role == role)

    def has_any_role(self, roles: Iterable[str]) -> bool:
        claims = self.get_user_from_token()
        return bool(claims and claims.role and claims.role in set(roles))

    def get_time_remaining(self) -> int:
        """Whole seconds until the access token expires, never negative."""
        expires_at = self.get_token_expires_at()
        if expires_at is None:
            return 0
        return max(0, (expires_at - self.clock()) // 1000)

    def get_authorization_header(self) -> Optional[str]:
        access_token = self.get_access_token()
        if not access_token:
            return None
        return f"{self.get_token_type()} {access_token}"

    def get_token_metadata(self) -> Dict[str, Any]:
        claims = self.get_user_from_token()
        return {
            'has_access_token': bool(self.get_access_token()),
            'has_refresh_token': bool(self.get_refresh_token()),
            'is_access_token_expired': self.is_token_expired(),
            'is_refresh_token_expired': self.is_refresh_token_expired(),
            'time_remaining': self.get_time_remaining(),
            'user_role': claims.role if claims else None,
        }

    def clear_tokens(self) -> None:
        """Remove every token key. Safe to call when nothing is stored."""
        self.store.remove_many(TOKEN_KEYS)
        logger.debug("Cleared stored tokens")
