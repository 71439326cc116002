"""
Tests for the auth service HTTP client.
"""

import pytest
import aiohttp
from unittest.mock import AsyncMock, MagicMock

from jose import jwt

from iob_client.auth.auth_client import AuthServiceClient
from iob_shared.exceptions import AuthenticationFailedError, ErrorCode


def make_response(status=200, body=None, reason="OK"):
    response = MagicMock()
    response.status = status
    response.reason = reason
    response.json = AsyncMock(return_value=body)
    return response


def make_session(response):
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    session.request.return_value.__aenter__.return_value = response
    return session


@pytest.fixture
def access_token():
    return jwt.encode({"sub": "user-1", "iat": 1700000000, "exp": 1700001800}, "secret", algorithm="HS256")


class TestLogin:
    """Test the certificate login handshake."""

    @pytest.mark.asyncio
    async def test_login_success(self, access_token):
        session = make_session(make_response(body={
            "accessToken": access_token,
            "user": {"id": "user-1"},
            "refreshToken": "refresh-1",
        }))
        client = AuthServiceClient("https://auth.example.com/", session=session)

        payload = await client.login()

        session.request.assert_called_once_with(
            'GET', "https://auth.example.com/api/auth/login", json=None
        )
        assert payload.token == access_token
        assert payload.expires_in == 1800
        assert payload.principal == {"id": "user-1"}
        assert payload.refresh_token == "refresh-1"

    @pytest.mark.asyncio
    async def test_login_opaque_token_uses_default_lifetime(self):
        session = make_session(make_response(body={"accessToken": "opaque"}))
        client = AuthServiceClient("https://auth.example.com", session=session, default_expires_in=600)

        payload = await client.login()

        assert payload.expires_in == 600

    @pytest.mark.asyncio
    async def test_login_rejected(self):
        session = make_session(make_response(status=401, body={"detail": "certificate not trusted"}, reason="Unauthorized"))
        client = AuthServiceClient("https://auth.example.com", session=session)

        with pytest.raises(AuthenticationFailedError) as exc_info:
            await client.login()

        assert exc_info.value.error_code == ErrorCode.AUTH_LOGIN_FAILED
        assert exc_info.value.context['status'] == 401
        assert "certificate not trusted" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_login_missing_access_token(self):
        session = make_session(make_response(body={"user": {"id": "user-1"}}))
        client = AuthServiceClient("https://auth.example.com", session=session)

        with pytest.raises(AuthenticationFailedError) as exc_info:
            await client.login()

        assert exc_info.value.error_code == ErrorCode.AUTH_INVALID_RESPONSE

    @pytest.mark.asyncio
    async def test_login_non_object_body(self):
        session = make_session(make_response(body=["unexpected"]))
        client = AuthServiceClient("https://auth.example.com", session=session)

        with pytest.raises(AuthenticationFailedError) as exc_info:
            await client.login()

        assert exc_info.value.error_code == ErrorCode.AUTH_INVALID_RESPONSE

    @pytest.mark.asyncio
    async def test_network_error(self):
        session = make_session(make_response())
        session.request.side_effect = aiohttp.ClientConnectionError("connection refused")
        client = AuthServiceClient("https://auth.example.com", session=session)

        with pytest.raises(AuthenticationFailedError) as exc_info:
            await client.login()

        assert isinstance(exc_info.value.cause, aiohttp.ClientConnectionError)
        session.request.assert_called_once()

    @pytest.mark.asyncio
    async def test_missing_certificate(self):
        client = AuthServiceClient(
            "https://auth.example.com",
            cert_file="/nonexistent/client.pem",
            key_file="/nonexistent/client.key"
        )

        with pytest.raises(AuthenticationFailedError) as exc_info:
            await client.login()

        assert exc_info.value.context['cert_file'] == "/nonexistent/client.pem"
        await client.close()


class TestRefresh:
    """Test the refresh token exchange."""

    @pytest.mark.asyncio
    async def test_refresh_success(self, access_token):
        refresh_session = make_session(make_response(body={"accessToken": access_token}))
        client = AuthServiceClient(
            "https://auth.example.com",
            refresh_base_url="https://api.example.com",
            session=MagicMock(),
            refresh_session=refresh_session
        )

        payload = await client.refresh("refresh-1")

        refresh_session.request.assert_called_once_with(
            'POST', "https://api.example.com/api/auth/refreshToken", json={'refreshToken': "refresh-1"}
        )
        assert payload.token == access_token
        assert payload.expires_in == 1800

    @pytest.mark.asyncio
    async def test_refresh_without_credential(self):
        refresh_session = make_session(make_response())
        client = AuthServiceClient("https://auth.example.com", refresh_session=refresh_session)

        with pytest.raises(AuthenticationFailedError) as exc_info:
            await client.refresh(None)

        assert exc_info.value.error_code == ErrorCode.AUTH_REFRESH_FAILED
        refresh_session.request.assert_not_called()

    @pytest.mark.asyncio
    async def test_refresh_rejected(self):
        refresh_session = make_session(make_response(status=403, body=None, reason="Forbidden"))
        client = AuthServiceClient("https://auth.example.com", refresh_session=refresh_session)

        with pytest.raises(AuthenticationFailedError) as exc_info:
            await client.refresh("revoked")

        assert exc_info.value.error_code == ErrorCode.AUTH_REFRESH_FAILED
        assert "Unknown error" in exc_info.value.message


@pytest.mark.asyncio
async def test_close_leaves_injected_sessions_open():
    session = make_session(make_response())

    async with AuthServiceClient("https://auth.example.com", session=session) as client:
        assert client.base_url == "https://auth.example.com"

    session.close.assert_not_called()
