"""
Authenticated HTTP request engine for the CaseFlow client.

Every call returns an ApiResponse envelope instead of raising: transport
failures are retried with exponential backoff, concurrent identical
requests share one network call, and a 401 triggers a single token refresh
followed by one re-send.
"""

import asyncio
import hashlib
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Callable
from urllib.parse import urlencode

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError, FormData

from caseflow.auth.auth_service import AuthService
from caseflow.exceptions import (
    CaseFlowError, NetworkError, AuthRequiredError, ErrorCode,
    create_error_response, handle_exception, http_status_error
)

logger = logging.getLogger(__name__)

# Substrings of transport error messages that are worth retrying
RETRYABLE_ERROR_MARKERS = (
    'Network request failed',
    'Request timeout',
    'Failed to fetch',
    'ERR_NETWORK',
    'ERR_INTERNET_DISCONNECTED',
)


class RetryConfig:
    """Configuration for retry logic."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = False
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter


@dataclass
class UploadFile:
    filename: str
    content: bytes
    content_type: str = 'application/octet-stream'
    field_name: str = 'file'


@dataclass
class RequestConfig:
    """Per-call options. None means "use the client default"."""
    method: str = 'GET'
    json_body: Any = None
    params: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    retries: Optional[int] = None
    retry_delay: Optional[float] = None
    # Builds a fresh multipart body for every send; a FormData can only be consumed once
    form_factory: Optional[Callable[[], FormData]] = None


@dataclass
class HttpResult:
    status: int
    headers: Dict[str, str]
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass
class ApiResponse:
    """The service's response envelope."""
    success: bool
    data: Any = None
    error: Optional[Dict[str, Any]] = None
    pagination: Optional[Dict[str, Any]] = None
    status: Optional[int] = None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.get('code') if self.error else None

    @property
    def error_message(self) -> Optional[str]:
        return self.error.get('message') if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'success': self.success}
        if self.data is not None:
            result['data'] = self.data
        if self.error is not None:
            result['error'] = self.error
        if self.pagination is not None:
            result['pagination'] = self.pagination
        return result

    @classmethod
    def from_envelope(cls, body: Dict[str, Any], status: int) -> 'ApiResponse':
        error = body.get('error')
        if error is not None and not isinstance(error, dict):
            error = http_status_error(status, str(error)).to_envelope_error()
        return cls(
            success=bool(body.get('success')),
            data=body.get('data'),
            error=error,
            pagination=body.get('pagination'),
            status=status
        )

    @classmethod
    def from_error(cls, error: CaseFlowError, status: Optional[int] = None,
                   details: Optional[Dict[str, Any]] = None) -> 'ApiResponse':
        envelope = create_error_response(error)
        if details is not None:
            envelope['error']['details'] = details
        return cls(success=False, error=envelope['error'], status=status)


class CaseFlowAPIClient:
    """
    HTTP API client for the case service.

    Provides GET/POST/PUT/PATCH/DELETE helpers, multipart upload and
    download on top of request(), which owns retry, de-duplication and
    token refresh.
    """

    def __init__(
        self,
        base_url: str,
        auth_service: AuthService,
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        default_headers: Optional[Dict[str, str]] = None,
        session: Optional[ClientSession] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.auth_service = auth_service
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()
        self.default_headers = dict(default_headers or {})

        self._session = session
        self._owns_session = session is None
        # De-duplication key -> shared in-flight send
        self._in_flight: Dict[str, asyncio.Task] = {}

        logger.info(f"API client initialized for server: {self.base_url}")

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(
                connector=connector,
                headers={'User-Agent': 'CaseFlowClient/2.1'}
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Cancel shared requests and close the session if this client created it."""
        for task in list(self._in_flight.values()):
            task.cancel()
        self._in_flight.clear()
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def request_budget(self) -> float:
        """Longest a single request() call can take with default retry settings."""
        retry = self.retry_config
        retries = retry.max_retries
        backoff = sum(
            min(retry.base_delay * (retry.exponential_base ** attempt), retry.max_delay)
            for attempt in range(retries)
        )
        # Each attempt may send, refresh the token and resend
        return (retries + 1) * 3 * self.timeout + backoff

    def clear_queue(self) -> None:
        """Forget in-flight requests; later identical calls start fresh sends."""
        self._in_flight.clear()

    def _build_url(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
        url = f"{self.base_url}{endpoint}"
        if params:
            url += ('&' if '?' in url else '?') + urlencode(params, doseq=True)
        return url

    @staticmethod
    def _request_key(method: str, url: str, body: Optional[bytes]) -> str:
        digest = hashlib.sha256(body or b'').hexdigest()
        return f"{method} {url} {digest}"

    @staticmethod
    def _is_retryable_error(error: Exception) -> bool:
        message = str(error)
        return any(marker in message for marker in RETRYABLE_ERROR_MARKERS)

    def _backoff_delay(self, attempt: int, base_delay: float) -> float:
        delay = min(
            base_delay * (self.retry_config.exponential_base ** attempt),
            self.retry_config.max_delay
        )
        if self.retry_config.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay

    async def request(self, endpoint: str, config: Optional[RequestConfig] = None) -> ApiResponse:
        """
        Make an authenticated request with retry logic.

        Args:
            endpoint: Path relative to the base URL, e.g. "/cases"
            config: Method, body and per-call overrides

        Returns:
            The service's envelope, or a synthesised failure envelope
            (NETWORK_ERROR, AUTH_REQUIRED, INVALID_RESPONSE).
        """
        config = config or RequestConfig()
        method = config.method.upper()
        retries = self.retry_config.max_retries if config.retries is None else config.retries
        base_delay = self.retry_config.base_delay if config.retry_delay is None else config.retry_delay

        try:
            body = json.dumps(config.json_body).encode('utf-8') if config.json_body is not None else None
        except (TypeError, ValueError) as e:
            error = handle_exception(
                e,
                context={'endpoint': endpoint},
                default_error_code=ErrorCode.VALIDATION_INVALID_INPUT
            )
            return ApiResponse.from_error(error)

        url = self._build_url(endpoint, config.params)
        last_error: Optional[Exception] = None

        for attempt in range(retries + 1):
            try:
                logger.debug(f"{method} {url} (attempt {attempt + 1})")
                result = await self._execute(method, url, body, config)
            except CaseFlowError as e:
                last_error = e
                if attempt < retries and self._is_retryable_error(e):
                    delay = self._backoff_delay(attempt, base_delay)
                    logger.warning(f"{e.message}; retrying in {delay:.1f} seconds")
                    await asyncio.sleep(delay)
                    continue
                break

            if result.status == 401:
                return ApiResponse.from_error(AuthRequiredError(), status=401)

            if result.status >= 500 and attempt < retries:
                delay = self._backoff_delay(attempt, base_delay)
                logger.warning(f"Server error {result.status} from {method} {url}; retrying in {delay:.1f} seconds")
                await asyncio.sleep(delay)
                continue

            return self._to_api_response(result)

        message = getattr(last_error, 'message', None) or str(last_error or 'Network request failed')
        logger.error(f"{method} {url} failed after {retries + 1} attempts: {message}")
        return ApiResponse.from_error(
            NetworkError(message),
            details={'retries': retries, 'lastError': repr(last_error)}
        )

    async def _execute(self, method: str, url: str, body: Optional[bytes], config: RequestConfig) -> HttpResult:
        """One attempt, joining an identical in-flight attempt when there is one."""
        if config.form_factory is not None:
            return await self._send_with_refresh(method, url, body, config)

        key = self._request_key(method, url, body)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._send_with_refresh(method, url, body, config))
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._release(k, t))
        else:
            logger.debug(f"Joining in-flight request {method} {url}")

        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # Mark the exception retrieved; awaiters re-raise it themselves
            task.exception()

    async def _send_with_refresh(
        self,
        method: str,
        url: str,
        body: Optional[bytes],
        config: RequestConfig
    ) -> HttpResult:
        authorization = await self.auth_service.get_authorization_header()
        result = await self._send(method, url, body, config, authorization)

        if result.status == 401:
            logger.info(f"401 from {method} {url}; refreshing access token")
            new_token = await self.auth_service.refresh_access_token()
            if new_token:
                authorization = f"{self.auth_service.token_manager.get_token_type()} {new_token}"
                result = await self._send(method, url, body, config, authorization)

        return result

    async def _send(
        self,
        method: str,
        url: str,
        body: Optional[bytes],
        config: RequestConfig,
        authorization: Optional[str]
    ) -> HttpResult:
        """
        Execute a single HTTP exchange.

        Raises:
            NetworkError: timeout or transport failure
        """
        session = await self._ensure_session()

        headers = {'Content-Type': 'application/json'}
        headers.update(self.default_headers)
        if authorization:
            headers['Authorization'] = authorization
        headers.update(config.headers)

        data: Any = body
        if config.form_factory is not None:
            # aiohttp must write its own multipart Content-Type with the boundary
            headers = {k: v for k, v in headers.items() if k.lower() != 'content-type'}
            data = config.form_factory()

        timeout = ClientTimeout(total=config.timeout if config.timeout is not None else self.timeout)

        try:
            async with session.request(method, url, data=data, headers=headers, timeout=timeout) as response:
                content = await response.read()
                return HttpResult(status=response.status, headers=dict(response.headers), body=content)
        except asyncio.TimeoutError as e:
            raise NetworkError("Request timeout", error_code=ErrorCode.REQUEST_TIMEOUT, cause=e) from e
        except (ClientError, OSError) as e:
            raise NetworkError(f"Network request failed: {e}", cause=e) from e

    def _to_api_response(self, result: HttpResult) -> ApiResponse:
        if not result.body:
            if result.ok:
                return ApiResponse(success=True, status=result.status)
            return ApiResponse.from_error(http_status_error(result.status), status=result.status)

        try:
            payload = json.loads(result.body.decode('utf-8'))
        except ValueError:
            logger.warning(f"Response with status {result.status} is not JSON")
            message = f"Invalid response from server ({result.status})"
            if result.ok:
                error = CaseFlowError(message, error_code=ErrorCode.INVALID_RESPONSE)
            else:
                error = http_status_error(result.status, message)
            return ApiResponse.from_error(error, status=result.status)

        if isinstance(payload, dict) and 'success' in payload:
            return ApiResponse.from_envelope(payload, result.status)

        if result.ok:
            return ApiResponse(success=True, data=payload, status=result.status)

        message = payload.get('message') if isinstance(payload, dict) else None
        return ApiResponse.from_error(http_status_error(result.status, message), status=result.status)

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None, **options) -> ApiResponse:
        return await self.request(endpoint, RequestConfig(method='GET', params=params, **options))

    async def post(self, endpoint: str, data: Any = None, **options) -> ApiResponse:
        return await self.request(endpoint, RequestConfig(method='POST', json_body=data, **options))

    async def put(self, endpoint: str, data: Any = None, **options) -> ApiResponse:
        return await self.request(endpoint, RequestConfig(method='PUT', json_body=data, **options))

    async def patch(self, endpoint: str, data: Any = None, **options) -> ApiResponse:
        return await self.request(endpoint, RequestConfig(method='PATCH', json_body=data, **options))

    async def delete(self, endpoint: str, **options) -> ApiResponse:
        return await self.request(endpoint, RequestConfig(method='DELETE', **options))

    async def upload(
        self,
        endpoint: str,
        file: UploadFile,
        additional_data: Optional[Dict[str, Any]] = None,
        **options
    ) -> ApiResponse:
        """POST a multipart form with `file` and any extra fields."""
        def build_form() -> FormData:
            form = FormData()
            form.add_field(file.field_name, file.content, filename=file.filename, content_type=file.content_type)
            for key, value in (additional_data or {}).items():
                form.add_field(key, value if isinstance(value, str) else json.dumps(value))
            return form

        headers = {k: v for k, v in options.pop('headers', {}).items() if k.lower() != 'content-type'}
        return await self.request(
            endpoint,
            RequestConfig(method='POST', headers=headers, form_factory=build_form, **options)
        )

    async def download(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Optional[bytes]:
        """Single attempt; returns the raw body, or None on any failure."""
        url = self._build_url(endpoint, params)
        try:
            result = await self._execute('GET', url, None, RequestConfig(method='GET'))
        except CaseFlowError as e:
            logger.error(f"Download error for {endpoint}: {e.message}")
            return None

        if not result.ok:
            logger.error(f"Download failed for {endpoint}: {result.status}")
            return None
        return result.body
