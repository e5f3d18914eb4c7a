"""
Upstream client boundary and the Blizzard API implementation.

The harvester depends only on::

    await client.get(path, headers, timeout) -> UpstreamResponse(status, headers, body)

The client never retries or sleeps; pacing and backoff belong to the
``RateController``.  Transport-level failures surface as
``UpstreamTransientError`` (``UpstreamTimeoutError`` for timeouts); every
HTTP status, including 4xx/5xx, is returned as a response for the caller to
classify.

Credential setup (.env, gitignored)::

    BLIZZARD_CLIENT_ID=your_client_id
    BLIZZARD_CLIENT_SECRET=your_client_secret
    BLIZZARD_ACCESS_TOKEN=optional_pre_issued_token

OAuth2 client-credentials flow::

    POST https://{region}.battle.net/oauth/token
      Body: grant_type=client_credentials
      Auth: Basic (client_id:client_secret)
      → {"access_token": "...", "expires_in": 86399}
"""

from __future__ import annotations

import base64
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional, Protocol, runtime_checkable

import httpx

from wow_harvester.errors import UpstreamTimeoutError, UpstreamTransientError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpstreamResponse:
    """Status, lower-cased headers and parsed JSON body (``None`` if not JSON)."""

    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@runtime_checkable
class UpstreamClient(Protocol):
    async def get(
        self,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> UpstreamResponse:
        ...


TOKEN_URL_TEMPLATE = "https://{region}.battle.net/oauth/token"


async def request_access_token(
    http: httpx.AsyncClient,
    region: str,
    client_id: str,
    client_secret: str,
) -> tuple[str, float]:
    """Run the client-credentials flow once.

    Returns:
        ``(access_token, expires_in_seconds)``.

    Raises:
        UpstreamTimeoutError: The token endpoint timed out.
        UpstreamTransientError: Transport failure or a non-200 answer.
    """
    creds = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()
    try:
        resp = await http.post(
            TOKEN_URL_TEMPLATE.format(region=region),
            headers={
                "Authorization": f"Basic {creds}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            data={"grant_type": "client_credentials"},
            timeout=30.0,
        )
    except httpx.TimeoutException as exc:
        raise UpstreamTimeoutError("OAuth token request timed out", target="blizzard:oauth") from exc
    except httpx.TransportError as exc:
        raise UpstreamTransientError(f"OAuth token request failed: {exc}", target="blizzard:oauth") from exc

    if resp.status_code != 200:
        raise UpstreamTransientError(
            f"OAuth token request returned {resp.status_code}",
            target="blizzard:oauth",
            status=resp.status_code,
        )
    data = resp.json()
    return data["access_token"], float(data.get("expires_in", 86399))


class BlizzardApiClient:
    """``UpstreamClient`` for the Blizzard Game Data and Profile APIs.

    Usage::

        async with httpx.AsyncClient() as http:
            client = BlizzardApiClient(http, region="us",
                                       client_id=..., client_secret=...)
            resp = await client.get("/data/wow/connected-realm/3676/auctions"
                                    "?namespace=dynamic-us&locale=en_US")

    A request that already carries an ``Authorization`` header (a token
    travelling in the job payload) is sent as-is; otherwise the client's own
    token is attached, fetching one on first use and again shortly before
    it expires.
    """

    BASE_URL_TEMPLATE: ClassVar[str] = "https://{region}.api.blizzard.com"
    TOKEN_REFRESH_MARGIN_SECONDS: ClassVar[float] = 300.0

    def __init__(
        self,
        http: httpx.AsyncClient,
        region: str = "us",
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        access_token: Optional[str] = None,
        default_timeout: float = 30.0,
    ) -> None:
        self.http = http
        self.region = region
        self.client_id = client_id
        self.client_secret = client_secret
        self.default_timeout = default_timeout
        self._access_token = access_token
        # A pre-issued token has no known expiry; trust it until a 401.
        self._token_expires_at: Optional[float] = None

    @property
    def base_url(self) -> str:
        return self.BASE_URL_TEMPLATE.format(region=self.region)

    async def _ensure_token(self) -> Optional[str]:
        expiring = (
            self._token_expires_at is not None
            and time.monotonic() >= self._token_expires_at - self.TOKEN_REFRESH_MARGIN_SECONDS
        )
        if self._access_token and not expiring:
            return self._access_token
        if not self.client_id or not self.client_secret:
            return self._access_token

        token, expires_in = await request_access_token(self.http, self.region, self.client_id, self.client_secret)
        self._access_token = token
        self._token_expires_at = time.monotonic() + expires_in
        logger.info("Obtained Blizzard access token (region=%s).", self.region)
        return self._access_token

    def invalidate_token(self) -> None:
        self._access_token = None
        self._token_expires_at = None

    async def get(
        self,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> UpstreamResponse:
        request_headers = dict(headers or {})
        if not any(k.lower() == "authorization" for k in request_headers):
            token = await self._ensure_token()
            if token:
                request_headers["Authorization"] = f"Bearer {token}"

        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            resp = await self.http.get(
                url,
                headers=request_headers,
                timeout=timeout if timeout is not None else self.default_timeout,
            )
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(f"GET {path} timed out", path=path) from exc
        except httpx.TransportError as exc:
            raise UpstreamTransientError(f"GET {path} failed: {exc}", path=path) from exc

        if resp.status_code == 401 and self.client_id:
            # Token revoked or expired early; next call fetches a new one.
            self.invalidate_token()

        body: Any = None
        if resp.content:
            try:
                body = resp.json()
            except ValueError:
                body = None
        return UpstreamResponse(
            status=resp.status_code,
            headers={k.lower(): v for k, v in resp.headers.items()},
            body=body,
        )
