"""Tests for the httpx portal browser."""

from __future__ import annotations

import re

import pytest
from pytest_httpx import HTTPXMock

from knx_portal_bridge.app.errors import AuthError, PortalError, SessionExpired
from knx_portal_bridge.app.portal import (
    Credentials,
    HttpPortalBrowser,
    SessionArtifacts,
    extract_session_id,
    page_token,
    parse_login_form,
)

BASE = "http://portal.test"

LOGIN_FORM = """
<html><body>
<form action="/login" method="post">
  <input type="hidden" name="csrf" value="tok">
  <input type="text" name="email">
  <input type="password" name="password">
</form>
</body></html>
"""


class TestHelpers:
    def test_page_token(self) -> None:
        assert page_token(1) == "01"
        assert page_token(12) == "12"

    def test_extract_session_id(self) -> None:
        assert extract_session_id(f"{BASE}/visu/index.fcgi?01&session_id=abc&lang=en") == "abc"
        assert extract_session_id(f"{BASE}/visu/index.fcgi?01") is None

    def test_parse_login_form(self) -> None:
        action, fields = parse_login_form(LOGIN_FORM)
        assert action == "/login"
        assert fields == {"csrf": "tok", "email": "", "password": ""}

    def test_credentials_repr_hides_password(self) -> None:
        assert "secret" not in repr(Credentials("user", "secret"))


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_follows_redirect_to_session(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=re.compile(r".*/visu/index\.fcgi\?00$"), method="GET", text=LOGIN_FORM)
        httpx_mock.add_response(
            url=f"{BASE}/login",
            method="POST",
            status_code=302,
            headers={"Location": "/visu/index.fcgi?01&session_id=abc123&lang=en"},
        )
        httpx_mock.add_response(url=re.compile(r".*session_id=abc123.*"), method="GET", text="<html></html>")

        browser = HttpPortalBrowser(base_url=BASE)
        artifacts = await browser.login(Credentials("user@example.com", "secret"))
        await browser.aclose()

        assert artifacts.session_id == "abc123"
        form = httpx_mock.get_requests()[1]
        assert b"email=user%40example.com" in form.content
        assert b"csrf=tok" in form.content

    @pytest.mark.asyncio
    async def test_login_without_session_redirect_fails(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=re.compile(r".*/visu/index\.fcgi\?00$"), method="GET", text=LOGIN_FORM)
        httpx_mock.add_response(url=f"{BASE}/login", method="POST", text=LOGIN_FORM)

        browser = HttpPortalBrowser(base_url=BASE)
        with pytest.raises(AuthError, match="session_id"):
            await browser.login(Credentials("user@example.com", "wrong"))
        await browser.aclose()

    @pytest.mark.asyncio
    async def test_login_requires_credentials(self) -> None:
        browser = HttpPortalBrowser(base_url=BASE)
        with pytest.raises(AuthError, match="not configured"):
            await browser.login(Credentials("", ""))
        await browser.aclose()


class TestFetchAndSend:
    @pytest.mark.asyncio
    async def test_fetch_page(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=re.compile(r".*/visu/index\.fcgi\?03&session_id=sid.*"), text="<html>page</html>")
        browser = HttpPortalBrowser(base_url=BASE)
        assert await browser.fetch(SessionArtifacts("sid"), 3) == "<html>page</html>"
        await browser.aclose()

    @pytest.mark.asyncio
    async def test_fetch_401_is_session_expired(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=re.compile(r".*/visu/index\.fcgi.*"), status_code=401)
        browser = HttpPortalBrowser(base_url=BASE)
        with pytest.raises(SessionExpired):
            await browser.fetch(SessionArtifacts("sid"), 1)
        await browser.aclose()

    @pytest.mark.asyncio
    async def test_fetch_login_page_is_session_expired(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=re.compile(r".*/visu/index\.fcgi.*"), text=LOGIN_FORM)
        browser = HttpPortalBrowser(base_url=BASE)
        with pytest.raises(SessionExpired):
            await browser.fetch(SessionArtifacts("sid"), 1)
        await browser.aclose()

    @pytest.mark.asyncio
    async def test_fetch_server_error(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=re.compile(r".*/visu/index\.fcgi.*"), status_code=500)
        browser = HttpPortalBrowser(base_url=BASE)
        with pytest.raises(PortalError):
            await browser.fetch(SessionArtifacts("sid"), 1)
        await browser.aclose()

    @pytest.mark.asyncio
    async def test_send_command(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=re.compile(r".*/visu/controlKNX\?5\+01\+00\+01&session_id=sid"), method="POST")
        browser = HttpPortalBrowser(base_url=BASE)
        await browser.send(SessionArtifacts("sid"), "5+01+00+01")
        await browser.aclose()
