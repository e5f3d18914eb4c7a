"""Upstream API boundary: the client protocol, the Blizzard client and its paths."""

from wow_harvester.upstream.client import BlizzardApiClient, UpstreamClient, UpstreamResponse

__all__ = ["BlizzardApiClient", "UpstreamClient", "UpstreamResponse"]
