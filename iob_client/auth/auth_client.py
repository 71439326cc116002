"""
Auth service client for the IoB client SDK.

Performs the mTLS login handshake and the certificate-less refresh call
against the auth service. ``login`` and ``refresh`` are shaped to be passed
straight to ``AuthManager`` as its login and refresh functions.
"""

import asyncio
import json
import logging
import ssl
from typing import Optional, Dict, Any
from urllib.parse import urljoin

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from iob_client.auth.jwt_utils import calculate_expires_in, DEFAULT_EXPIRES_IN
from iob_shared.exceptions import AuthenticationFailedError, ErrorCode
from iob_shared.models import AuthPayload

logger = logging.getLogger(__name__)

LOGIN_PATH = "/api/auth/login"
REFRESH_PATH = "/api/auth/refreshToken"


class AuthServiceClient:
    """
    HTTP client for the auth service.

    The login session presents the client certificate; the refresh session
    does not, and may target a different base URL.
    """

    def __init__(
        self,
        base_url: str,
        cert_file: Optional[str] = None,
        key_file: Optional[str] = None,
        ca_file: Optional[str] = None,
        refresh_base_url: Optional[str] = None,
        timeout: float = 30.0,
        default_expires_in: int = DEFAULT_EXPIRES_IN,
        session: Optional[ClientSession] = None,
        refresh_session: Optional[ClientSession] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.refresh_base_url = (refresh_base_url or base_url).rstrip('/')
        self.cert_file = cert_file
        self.key_file = key_file
        self.ca_file = ca_file
        self.timeout = ClientTimeout(total=timeout)
        self.default_expires_in = default_expires_in

        self._session = session
        self._refresh_session = refresh_session
        self._owned_sessions = []

        logger.info(f"Auth service client initialized for: {self.base_url}")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context(cafile=self.ca_file)
        if self.cert_file:
            context.load_cert_chain(self.cert_file, self.key_file)
        return context

    def _get_session(self) -> ClientSession:
        if self._session is None:
            connector = aiohttp.TCPConnector(ssl=self._create_ssl_context())
            self._session = ClientSession(connector=connector, timeout=self.timeout)
            self._owned_sessions.append(self._session)
        return self._session

    def _get_refresh_session(self) -> ClientSession:
        if self._refresh_session is None:
            self._refresh_session = ClientSession(timeout=self.timeout)
            self._owned_sessions.append(self._refresh_session)
        return self._refresh_session

    async def close(self) -> None:
        """Close the HTTP sessions this client created."""
        for session in self._owned_sessions:
            if not session.closed:
                await session.close()
        self._owned_sessions = []
        self._session = None
        self._refresh_session = None

    async def _request(
        self,
        session: ClientSession,
        method: str,
        url: str,
        data: Optional[Dict[str, Any]] = None,
        error_code: ErrorCode = ErrorCode.AUTH_LOGIN_FAILED
    ) -> Dict[str, Any]:
        """
        Make a single request; the auth handshake is never retried here.

        Raises:
            AuthenticationFailedError: On network failure or non-200 response
        """
        logger.debug(f"Making {method} request to {url}")
        try:
            async with session.request(method, url, json=data) as response:
                if response.status == 200:
                    try:
                        body = await response.json()
                    except (json.JSONDecodeError, aiohttp.ContentTypeError) as e:
                        raise AuthenticationFailedError(
                            f"Auth service returned an invalid body: {e}",
                            error_code=ErrorCode.AUTH_INVALID_RESPONSE,
                            cause=e
                        )
                    if not isinstance(body, dict):
                        raise AuthenticationFailedError(
                            "Auth service returned an invalid body",
                            error_code=ErrorCode.AUTH_INVALID_RESPONSE
                        )
                    return body

                detail = await self._get_error_detail(response)
                raise AuthenticationFailedError(
                    f"Auth request failed ({response.status}): {detail}",
                    error_code=error_code,
                    context={'status': response.status, 'url': url}
                )
        except (ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Network error during auth request: {e}")
            raise AuthenticationFailedError(
                f"Auth request to {url} failed: {e}",
                error_code=error_code,
                context={'url': url},
                cause=e
            )

    async def _get_error_detail(self, response) -> str:
        try:
            body = await response.json()
        except (json.JSONDecodeError, aiohttp.ContentTypeError, ValueError):
            return response.reason or 'Unknown error'
        if isinstance(body, dict):
            return body.get('detail') or body.get('title') or 'Unknown error'
        return 'Unknown error'

    def _build_payload(self, body: Dict[str, Any]) -> AuthPayload:
        access_token = body.get('accessToken')
        if not access_token or not isinstance(access_token, str):
            raise AuthenticationFailedError(
                "Auth service response is missing accessToken",
                error_code=ErrorCode.AUTH_INVALID_RESPONSE
            )

        access_token = access_token.strip()
        return AuthPayload(
            token=access_token,
            expires_in=calculate_expires_in(access_token, self.default_expires_in),
            principal=body.get('user'),
            refresh_token=body.get('refreshToken')
        )

    async def login(self) -> AuthPayload:
        """Authenticate with the client certificate."""
        url = urljoin(self.base_url + '/', LOGIN_PATH.lstrip('/'))
        try:
            session = self._get_session()
        except OSError as e:
            raise AuthenticationFailedError(
                f"Failed to load client certificate: {e}",
                context={'cert_file': self.cert_file},
                cause=e
            )
        body = await self._request(session, 'GET', url)
        return self._build_payload(body)

    async def refresh(self, refresh_token: Optional[str]) -> AuthPayload:
        """Exchange a refresh token for a new access token."""
        if not refresh_token:
            raise AuthenticationFailedError(
                "No refresh token available",
                error_code=ErrorCode.AUTH_REFRESH_FAILED
            )

        url = urljoin(self.refresh_base_url + '/', REFRESH_PATH.lstrip('/'))
        body = await self._request(
            self._get_refresh_session(),
            'POST',
            url,
            data={'refreshToken': refresh_token},
            error_code=ErrorCode.AUTH_REFRESH_FAILED
        )
        return self._build_payload(body)
