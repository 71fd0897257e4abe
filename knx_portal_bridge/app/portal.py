"""Portal capability: login, page fetch and command send.

The rest of the bridge only sees the ``PortalBrowser`` protocol. The HTTP
implementation below walks the portal's login redirect chain with httpx;
anything that needs a real browser engine can be plugged in instead.
"""

from __future__ import annotations

import logging
import urllib.parse
from dataclasses import dataclass, field
from html.parser import HTMLParser
from typing import Protocol

import httpx

from .errors import AuthError, PortalError, SessionExpired

_LOGGER = logging.getLogger("knx_bridge.portal")

HTTP_UNAUTHORIZED = 401
HTTP_BAD_REQUEST = 400

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/131.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class SessionArtifacts:
    session_id: str = field(repr=False)
    cookies: dict[str, str] = field(default_factory=dict, repr=False)


class PortalBrowser(Protocol):
    async def login(self, credentials: Credentials) -> SessionArtifacts: ...

    async def fetch(self, artifacts: SessionArtifacts, page: int) -> str: ...

    async def send(self, artifacts: SessionArtifacts, payload: str) -> None: ...


def page_token(page: int) -> str:
    return f"{int(page):02d}"


def extract_session_id(url: str) -> str | None:
    if "session_id=" not in url:
        return None
    value = url.split("session_id=", 1)[1].split("&", 1)[0].split("#", 1)[0]
    return value or None


def looks_like_login_page(html: str) -> bool:
    lowered = html.lower()
    return 'name="email"' in lowered or "name='email'" in lowered


class _LoginFormParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self.action: str | None = None
        self.fields: dict[str, str] = {}
        self._in_form = False
        self._done = False

    def handle_starttag(self, tag, attrs):
        if self._done:
            return
        a = {k: (v or "") for k, v in attrs}
        if tag == "form" and not self._in_form:
            self._in_form = True
            self.action = a.get("action") or ""
        elif tag == "input" and self._in_form:
            name = a.get("name")
            if name:
                self.fields[name] = a.get("value", "")

    def handle_endtag(self, tag):
        if tag == "form" and self._in_form:
            self._in_form = False
            self._done = True


def parse_login_form(html: str) -> tuple[str | None, dict[str, str]]:
    p = _LoginFormParser()
    p.feed(html)
    return p.action, p.fields


class HttpPortalBrowser:
    def __init__(
        self,
        *,
        base_url: str,
        request_timeout_s: float = 15.0,
        verify_tls: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(request_timeout_s)
        self._verify = verify_tls
        self._transport = transport
        self._client = self._new_client()

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout,
            verify=self._verify,
            transport=self._transport,
            headers={"User-Agent": USER_AGENT},
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    def _page_url(self, artifacts: SessionArtifacts | None, page: int) -> str:
        url = f"{self._base_url}/visu/index.fcgi?{page_token(page)}"
        if artifacts is not None:
            url += f"&session_id={artifacts.session_id}&lang=en"
        return url

    @staticmethod
    def _cookie_header(artifacts: SessionArtifacts) -> dict[str, str]:
        if not artifacts.cookies:
            return {}
        return {"Cookie": "; ".join(f"{k}={v}" for k, v in artifacts.cookies.items())}

    async def login(self, credentials: Credentials) -> SessionArtifacts:
        if not credentials.username or not credentials.password:
            raise AuthError("Portal credentials are not configured")

        # Fresh cookie jar per attempt: never reuse state from a rejected session.
        async with self._new_client() as client:
            try:
                start = await client.get(self._page_url(None, 0), follow_redirects=True)
                sid = extract_session_id(str(start.url))
                if sid:
                    _LOGGER.info("Portal accepted existing login without form")
                    return SessionArtifacts(session_id=sid, cookies=dict(client.cookies.items()))

                action, fields = parse_login_form(start.text)
                if "email" not in fields and not looks_like_login_page(start.text):
                    raise AuthError(f"Login form not found (status {start.status_code})")
                fields["email"] = credentials.username
                fields["password"] = credentials.password
                target = urllib.parse.urljoin(str(start.url), action or str(start.url))

                _LOGGER.info("Submitting portal login form")
                resp = await client.post(target, data=fields, follow_redirects=True)
            except httpx.HTTPError as e:
                raise AuthError(f"Portal unreachable: {e}") from e

            for hop in [*resp.history, resp]:
                sid = extract_session_id(str(hop.url)) or extract_session_id(hop.headers.get("location", ""))
                if sid:
                    return SessionArtifacts(session_id=sid, cookies=dict(client.cookies.items()))

            if resp.status_code >= HTTP_BAD_REQUEST:
                raise AuthError(f"Login rejected: HTTP {resp.status_code}")
            raise AuthError("Login failed: redirect did not carry a session_id")

    async def fetch(self, artifacts: SessionArtifacts, page: int) -> str:
        try:
            resp = await self._client.get(self._page_url(artifacts, page), headers=self._cookie_header(artifacts))
        except httpx.HTTPError as e:
            raise PortalError(f"Page {page_token(page)} fetch failed: {e}") from e
        if resp.status_code == HTTP_UNAUTHORIZED:
            raise SessionExpired(f"Page {page_token(page)}: 401")
        if resp.status_code >= HTTP_BAD_REQUEST:
            raise PortalError(f"Page {page_token(page)} fetch failed: HTTP {resp.status_code}")
        text = resp.text
        # An expired session is sometimes answered with the login form instead of a 401.
        if looks_like_login_page(text):
            raise SessionExpired(f"Page {page_token(page)}: redirected to login")
        return text

    async def send(self, artifacts: SessionArtifacts, payload: str) -> None:
        url = f"{self._base_url}/visu/controlKNX?{payload}&session_id={artifacts.session_id}"
        try:
            resp = await self._client.post(url, headers=self._cookie_header(artifacts))
        except httpx.HTTPError as e:
            raise PortalError(f"Command send failed: {e}") from e
        if resp.status_code == HTTP_UNAUTHORIZED:
            raise SessionExpired("Command rejected: 401")
        if resp.status_code >= HTTP_BAD_REQUEST:
            raise PortalError(f"Command failed: HTTP {resp.status_code}")
