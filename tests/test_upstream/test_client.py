"""Tests for the Blizzard API client over ``httpx.MockTransport``."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from wow_harvester.errors import UpstreamTimeoutError, UpstreamTransientError
from wow_harvester.upstream.blizzard import (
    auctions_path,
    character_profile_path,
    guild_roster_path,
    mythic_leaderboard_path,
    rate_target,
)
from wow_harvester.upstream.client import BlizzardApiClient, UpstreamClient, UpstreamResponse


class FakeBlizzard:
    """Transport handler: token endpoint plus scripted API responses."""

    def __init__(self, api_response: httpx.Response | None = None) -> None:
        self.api_response = api_response or httpx.Response(200, json={"ok": True}, headers={"X-Trace": "1"})
        self.token_calls = 0
        self.api_requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/token":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": f"tok-{self.token_calls}", "expires_in": 86399})
        self.api_requests.append(request)
        return self.api_response


def _run_with(handler, scenario, **client_kwargs):
    async def wrapped():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = BlizzardApiClient(http, region="us", **client_kwargs)
            return await scenario(client)

    return asyncio.run(wrapped())


class TestBlizzardApiClient:
    def test_satisfies_protocol(self):
        client = BlizzardApiClient(httpx.AsyncClient())
        assert isinstance(client, UpstreamClient)

    def test_fetches_token_once_and_sends_bearer(self):
        blizzard = FakeBlizzard()

        async def scenario(client):
            first = await client.get("/data/wow/x")
            await client.get("/data/wow/y")
            return first

        resp = _run_with(blizzard, scenario, client_id="id", client_secret="secret")
        assert blizzard.token_calls == 1
        assert resp.status == 200
        assert resp.body == {"ok": True}
        assert resp.headers["x-trace"] == "1"
        assert all(r.headers["authorization"] == "Bearer tok-1" for r in blizzard.api_requests)
        assert str(blizzard.api_requests[0].url).startswith("https://us.api.blizzard.com/data/wow/x")

    def test_payload_token_passed_through(self):
        blizzard = FakeBlizzard()

        async def scenario(client):
            return await client.get("/data/wow/x", headers={"Authorization": "Bearer from-job"})

        _run_with(blizzard, scenario, client_id="id", client_secret="secret")
        assert blizzard.token_calls == 0
        assert blizzard.api_requests[0].headers["authorization"] == "Bearer from-job"

    def test_pre_issued_token(self):
        blizzard = FakeBlizzard()

        async def scenario(client):
            return await client.get("/data/wow/x")

        _run_with(blizzard, scenario, access_token="static")
        assert blizzard.token_calls == 0
        assert blizzard.api_requests[0].headers["authorization"] == "Bearer static"

    def test_error_statuses_returned_not_raised(self):
        blizzard = FakeBlizzard(httpx.Response(429, json={"code": 429}, headers={"Retry-After": "2"}))

        async def scenario(client):
            return await client.get("/data/wow/x")

        resp = _run_with(blizzard, scenario, access_token="static")
        assert resp.status == 429
        assert resp.ok is False
        assert resp.headers["retry-after"] == "2"

    def test_401_invalidates_token(self):
        blizzard = FakeBlizzard(httpx.Response(401))

        async def scenario(client):
            await client.get("/data/wow/x")
            await client.get("/data/wow/x")

        _run_with(blizzard, scenario, client_id="id", client_secret="secret")
        assert blizzard.token_calls == 2

    def test_non_json_body(self):
        blizzard = FakeBlizzard(httpx.Response(502, text="<html>bad gateway</html>"))

        async def scenario(client):
            return await client.get("/data/wow/x")

        resp = _run_with(blizzard, scenario, access_token="static")
        assert resp.status == 502
        assert resp.body is None

    def test_timeout_raises_timeout_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        async def scenario(client):
            await client.get("/data/wow/x", timeout=0.1)

        with pytest.raises(UpstreamTimeoutError) as excinfo:
            _run_with(handler, scenario, access_token="static")
        assert excinfo.value.path == "/data/wow/x"

    def test_transport_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async def scenario(client):
            await client.get("/data/wow/x")

        with pytest.raises(UpstreamTransientError):
            _run_with(handler, scenario, access_token="static")

    def test_token_failure_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        async def scenario(client):
            await client.get("/data/wow/x")

        with pytest.raises(UpstreamTransientError) as excinfo:
            _run_with(handler, scenario, client_id="id", client_secret="secret")
        assert excinfo.value.status == 503


class TestUpstreamResponse:
    def test_ok_range(self):
        assert UpstreamResponse(204).ok
        assert not UpstreamResponse(304).ok


class TestPaths:
    def test_character_path(self):
        assert character_profile_path("area-52", "thrall") == (
            "/profile/wow/character/area-52/thrall?namespace=profile-us&locale=en_US"
        )

    def test_roster_path_eu(self):
        assert guild_roster_path("area-52", "rage-quit", region="eu").startswith(
            "/data/wow/guild/area-52/rage-quit/roster?namespace=profile-eu"
        )

    def test_leaderboard_path(self):
        assert "/mythic-leaderboard/375/period/940?namespace=dynamic-us" in mythic_leaderboard_path(3676, 375, 940)

    def test_auctions_paths(self):
        assert auctions_path(3676).startswith("/data/wow/connected-realm/3676/auctions?")
        assert auctions_path(None).startswith("/data/wow/auctions/commodities?")

    def test_rate_target(self):
        assert rate_target("eu") == "blizzard:eu"
