"""
Authentication service for the CaseFlow client.

Talks to the /auth endpoints directly (not through the request engine,
which itself depends on this service for bearer tokens) and coordinates
token refresh so that concurrent callers share a single refresh request.
"""

import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any, Callable, List, Tuple

from aiohttp import ClientSession, ClientTimeout, ClientError

from caseflow.auth.token_manager import TokenManager, TokenData
from caseflow.exceptions import NetworkError, PersistenceError, AuthRequiredError, ErrorCode
from caseflow.interfaces import KeyValueStore
from caseflow.logging_config import AuditLogger, log_structured_error
from caseflow.models import User

logger = logging.getLogger(__name__)

USER_KEY = 'user'
DEVICE_ID_KEY = 'device_id'

LOGIN_FAILED_MESSAGE = 'Login failed. Please check your credentials.'
LOGIN_NETWORK_MESSAGE = 'Network error. Please check your connection and try again.'
LOGOUT_FAILED_MESSAGE = 'Logout completed locally but server logout failed.'


@dataclass
class LoginResult:
    success: bool
    user: Optional[User] = None
    error: Optional[Dict[str, str]] = None


@dataclass
class LogoutResult:
    success: bool
    error: Optional[Dict[str, str]] = None


@dataclass
class ProfileUpdateResult:
    success: bool
    user: Optional[User] = None
    error: Optional[str] = None
    applied_locally: bool = False


def _generate_device_id() -> str:
    return f"device_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class AuthService:
    """
    Login, logout, profile updates and token refresh.

    Refresh is single-flight: while one refresh request is outstanding every
    other caller awaits the same task instead of sending its own.
    """

    def __init__(
        self,
        base_url: str,
        token_manager: TokenManager,
        store: KeyValueStore,
        device_info: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        session: Optional[ClientSession] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.token_manager = token_manager
        self.store = store
        self.device_info = device_info or {'platform': 'python', 'version': '2.1.0', 'model': 'unknown'}
        self.timeout = ClientTimeout(total=timeout)
        self.audit = audit_logger or AuditLogger()

        self._session = session
        self._owns_session = session is None
        self._refresh_task: Optional[asyncio.Task] = None

        self._auth_callbacks: List[Callable[[bool], None]] = []
        self._token_refresh_callbacks: List[Callable[[str], None]] = []

    def add_auth_callback(self, callback: Callable[[bool], None]) -> None:
        """
        Add callback for authentication state changes.

        Args:
            callback: Function called with authentication status (bool)
        """
        self._auth_callbacks.append(callback)

    def add_token_refresh_callback(self, callback: Callable[[str], None]) -> None:
        self._token_refresh_callbacks.append(callback)

    def _notify_auth_change(self, is_authenticated: bool) -> None:
        for callback in self._auth_callbacks:
            try:
                callback(is_authenticated)
            except Exception as e:
                logger.error(f"Error in auth callback: {e}")

    def _notify_token_refresh(self, new_token: str) -> None:
        for callback in self._token_refresh_callbacks:
            try:
                callback(new_token)
            except Exception as e:
                logger.error(f"Error in token refresh callback: {e}")

    async def _ensure_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(headers={'User-Agent': 'CaseFlowClient/2.1'})
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this service created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _send_json(
        self,
        method: str,
        path: str,
        body: Dict[str, Any],
        authorization: Optional[str] = None
    ) -> Tuple[int, Dict[str, Any]]:
        """
        Send one JSON request and return (status, parsed body).

        Raises:
            NetworkError: the request never produced an HTTP response
        """
        session = await self._ensure_session()
        headers = {'Content-Type': 'application/json'}
        if authorization:
            headers['Authorization'] = authorization

        try:
            async with session.request(
                method,
                f"{self.base_url}{path}",
                data=json.dumps(body),
                headers=headers,
                timeout=self.timeout
            ) as response:
                text = await response.text()
                status = response.status
        except asyncio.TimeoutError as e:
            raise NetworkError("Request timeout", error_code=ErrorCode.REQUEST_TIMEOUT, cause=e) from e
        except (ClientError, OSError) as e:
            raise NetworkError(f"Network request failed: {e}", cause=e) from e

        try:
            data = json.loads(text) if text else {}
        except ValueError:
            logger.warning(f"Non-JSON response from {method} {path} ({status})")
            data = {}

        return status, data if isinstance(data, dict) else {}

    def get_device_id(self) -> str:
        """Per-installation device identifier, generated on first use."""
        device_id = self.store.get(DEVICE_ID_KEY)
        if not device_id:
            device_id = _generate_device_id()
            self.store.set(DEVICE_ID_KEY, device_id)
            logger.info(f"Generated device ID {device_id}")
        return device_id

    def reset_device_id(self) -> str:
        self.store.remove(DEVICE_ID_KEY)
        return self.get_device_id()

    async def login(self, username: str, password: str) -> LoginResult:
        """
        Authenticate with username and password.

        Failures are returned as `{code, message}` rather than raised:
        NETWORK_ERROR when the service could not be reached, otherwise the
        service's own error or LOGIN_FAILED.
        """
        username = username.strip()
        request_body = {
            'username': username,
            'password': password,
            'deviceId': self.get_device_id(),
            'deviceInfo': self.device_info,
        }

        try:
            status, data = await self._send_json('POST', '/auth/login', request_body)
        except NetworkError as e:
            logger.error(f"Login error: {e}")
            self.audit.log_authentication(username, 'login', success=False, failure_reason=str(e))
            return LoginResult(
                success=False,
                error={'code': ErrorCode.NETWORK_ERROR.value, 'message': LOGIN_NETWORK_MESSAGE}
            )

        if 200 <= status < 300 and data.get('success'):
            try:
                auth_data = data['data']
                token_data = TokenData.from_dict(auth_data['tokens'])
                user = User.from_dict(auth_data['user'])
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Unexpected login response: {e}")
                data = {}
            else:
                self.token_manager.store_tokens(token_data)
                self.store.set(USER_KEY, user.to_dict())
                logger.info(f"Logged in as {username}")
                self.audit.log_authentication(username, 'login', success=True)
                self._notify_auth_change(True)
                return LoginResult(success=True, user=user)

        error = data.get('error') if isinstance(data.get('error'), dict) else None
        if not error or 'code' not in error:
            error = {'code': ErrorCode.LOGIN_FAILED.value, 'message': LOGIN_FAILED_MESSAGE}

        logger.warning(f"Login failed for {username}: {error.get('message')}")
        self.audit.log_authentication(username, 'login', success=False, failure_reason=error.get('code'))
        return LoginResult(success=False, error=error)

    async def refresh_access_token(self) -> Optional[str]:
        """
        Exchange the refresh token for a new access token.

        Concurrent callers share one request. Returns the new access token,
        or None after clearing all auth state when refresh is impossible.
        """
        if self._refresh_task is None:
            self._refresh_task = asyncio.ensure_future(self._perform_token_refresh())
            self._refresh_task.add_done_callback(self._clear_refresh_task)
        return await asyncio.shield(self._refresh_task)

    def _clear_refresh_task(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    async def _perform_token_refresh(self) -> Optional[str]:
        refresh_token = self.token_manager.get_refresh_token()
        if not refresh_token:
            logger.info("No refresh token stored; clearing auth state")
            self._clear_auth_data()
            return None

        try:
            status, data = await self._send_json('POST', '/auth/refresh', {'refreshToken': refresh_token})
        except NetworkError as e:
            logger.error(f"Token refresh error: {e}")
            self._clear_auth_data()
            return None

        payload = data.get('data') if 200 <= status < 300 and data.get('success') else None
        if not isinstance(payload, dict):
            logger.warning(f"Token refresh rejected ({status})")
            self._clear_auth_data()
            return None

        try:
            token_data = TokenData(
                access_token=payload['accessToken'],
                # Keep the existing refresh token unless the server rotated it
                refresh_token=payload.get('refreshToken') or refresh_token,
                expires_in=int(payload['expiresIn']),
                token_type=payload.get('tokenType') or 'Bearer'
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Unexpected refresh response: {e}")
            self._clear_auth_data()
            return None

        self.token_manager.store_tokens(token_data)
        logger.info("Access token refreshed")
        self._notify_token_refresh(token_data.access_token)
        return token_data.access_token

    def _clear_auth_data(self) -> None:
        try:
            self.token_manager.clear_tokens()
            self.store.remove(USER_KEY)
        except PersistenceError as e:
            log_structured_error(logger, e)
        self._notify_auth_change(False)

    async def get_access_token(self) -> Optional[str]:
        """Stored access token, refreshed first when it is (nearly) expired."""
        token = self.token_manager.get_access_token()
        if not token:
            return None

        if self.token_manager.is_token_expired():
            return await self.refresh_access_token()

        return token

    async def get_authorization_header(self) -> Optional[str]:
        token = await self.get_access_token()
        if not token:
            return None
        return f"{self.token_manager.get_token_type()} {token}"

    async def is_authenticated(self) -> bool:
        return await self.get_access_token() is not None

    def get_current_user(self) -> Optional[User]:
        data = self.store.get(USER_KEY)
        if not data:
            return None
        try:
            return User.from_dict(data)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable stored user: {e}")
            return None

    async def logout(self) -> LogoutResult:
        """
        Invalidate the session server-side (best effort), then always clear
        local tokens and the cached user.
        """
        refresh_token = self.token_manager.get_refresh_token()
        user = self.get_current_user()
        server_error: Optional[str] = None

        if refresh_token:
            try:
                status, _ = await self._send_json(
                    'POST',
                    '/auth/logout',
                    {'refreshToken': refresh_token},
                    authorization=self.token_manager.get_authorization_header()
                )
                if not 200 <= status < 300:
                    server_error = f"HTTP {status}"
            except NetworkError as e:
                server_error = str(e)

        self._clear_auth_data()
        username = (user.username or user.id) if user else 'unknown'

        if server_error:
            logger.warning(f"Server logout failed: {server_error}")
            self.audit.log_authentication(username, 'logout', success=False, failure_reason=server_error)
            return LogoutResult(
                success=False,
                error={'code': ErrorCode.LOGOUT_ERROR.value, 'message': LOGOUT_FAILED_MESSAGE}
            )

        self.audit.log_authentication(username, 'logout', success=True)
        return LogoutResult(success=True)

    async def update_profile(self, changes: Dict[str, Any]) -> ProfileUpdateResult:
        """
        Update profile fields on the server.

        When the server call fails the change is still merged into the
        locally cached user so the edit is not lost. Without a session
        nothing is sent or stored.
        """
        authorization = await self.get_authorization_header()
        if authorization is None:
            auth_error = AuthRequiredError()
            logger.warning(f"Profile update refused: {auth_error.message}")
            return ProfileUpdateResult(success=False, error=auth_error.message)

        error: Optional[str] = None
        data: Dict[str, Any] = {}

        try:
            status, data = await self._send_json('PUT', '/auth/profile', changes, authorization=authorization)
            if not (200 <= status < 300 and data.get('success')):
                server_error = data.get('error')
                error = (server_error or {}).get('message') if isinstance(server_error, dict) else None
                error = error or 'Failed to update profile'
        except NetworkError as e:
            logger.error(f"Profile update error: {e}")
            error = 'Network error. Please try again.'

        # A logout during the request clears the user; it must stay cleared
        if self.token_manager.get_access_token() is None:
            logger.warning("Session ended during profile update; not caching the change")
            return ProfileUpdateResult(success=False, error=error or AuthRequiredError().message)

        current = self.get_current_user()

        if error is None:
            payload = data.get('data')
            server_user = payload.get('user', payload) if isinstance(payload, dict) else None
            if isinstance(server_user, dict) and server_user.get('id'):
                user = User.from_dict(server_user)
            else:
                user = current.merged(changes) if current else None
            if user:
                self.store.set(USER_KEY, user.to_dict())
            return ProfileUpdateResult(success=True, user=user)

        if current is None:
            return ProfileUpdateResult(success=False, error=error)

        user = current.merged(changes)
        self.store.set(USER_KEY, user.to_dict())
        logger.info("Profile change kept locally after server failure")
        return ProfileUpdateResult(success=False, user=user, error=error, applied_locally=True)
