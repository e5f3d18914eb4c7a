"""
Rate-controlled upstream access for handlers.

``UpstreamGateway.fetch()`` is the only way a handler talks to the upstream
API.  Each call:

  1. adopts any larger delay another worker published for the target,
  2. waits on the target's ``RateController``,
  3. issues the GET,
  4. classifies the response and feeds the controller.

With a ``KeyPool`` the request token is checked first (a locked pooled key
is swapped for the next live one) and every 403/429 is counted against it.

Status handling::

  403 / 429 / 503, Retry-After                → on_limited, publish,
                                                UpstreamTransientError
  2xx with Retry-After or Remaining: 0        → on_limited, publish, returned
  timeout                                     → on_limited, re-raised
  404                                         → UpstreamNotFoundError
  401, other 5xx                              → UpstreamTransientError
  other 4xx                                   → UpstreamPermanentError
  2xx, 304                                    → on_success, returned
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Optional

from wow_harvester.errors import (
    UpstreamNotFoundError,
    UpstreamPermanentError,
    UpstreamTimeoutError,
    UpstreamTransientError,
)
from wow_harvester.ratelimit.controller import RateControllerRegistry, classify_response
from wow_harvester.upstream.client import UpstreamClient, UpstreamResponse
from wow_harvester.upstream.keys import KeyPool

logger = logging.getLogger(__name__)

NOT_MODIFIED = 304


def bearer_token(headers: Optional[Mapping[str, str]]) -> Optional[str]:
    """Token from an ``Authorization: Bearer`` header, if any."""
    for name, value in (headers or {}).items():
        if name.lower() == "authorization" and value.startswith("Bearer "):
            return value[len("Bearer "):]
    return None


class UpstreamGateway:
    """``UpstreamClient`` + ``RateControllerRegistry``.

    Args:
        client:   Upstream HTTP client.
        limiters: Per-target rate controllers (shared by every handler slot
                  in the process).
        timeout:  Per-call timeout passed to the client.
        keys:     Optional API key pool; 403/429 answers are counted against
                  the token that drew them and locked tokens are swapped.
    """

    def __init__(
        self,
        client: UpstreamClient,
        limiters: RateControllerRegistry,
        timeout: Optional[float] = None,
        keys: Optional[KeyPool] = None,
    ) -> None:
        self.client = client
        self.limiters = limiters
        self.timeout = timeout
        self.keys = keys

    async def _with_key(self, headers: Optional[Mapping[str, str]]) -> Optional[Mapping[str, str]]:
        if not self.keys:
            return headers
        current = bearer_token(headers)
        token = await self.keys.resolve(current)
        if token is None or token == current:
            return headers
        updated = {k: v for k, v in (headers or {}).items() if k.lower() != "authorization"}
        updated["Authorization"] = f"Bearer {token}"
        return updated

    async def fetch(
        self,
        target: str,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> UpstreamResponse:
        controller = self.limiters.get(target)
        await self.limiters.sync(target)
        await controller.wait()
        headers = await self._with_key(headers)

        try:
            response = await self.client.get(path, headers=headers, timeout=self.timeout)
        except UpstreamTimeoutError as exc:
            controller.on_limited()
            await self.limiters.publish(target)
            exc.target = exc.target or target
            raise
        if self.keys:
            await self.keys.report(bearer_token(headers), response.status)

        usable = response.ok or response.status == NOT_MODIFIED
        signal = classify_response(response.status, response.headers)
        if signal.limited:
            controller.on_limited(signal.hint_ms)
            await self.limiters.publish(target)
            if usable:
                # Quota exhausted by this call; the body itself is good.
                return response
            raise UpstreamTransientError(
                f"Rate limited on {path} ({signal.reason})",
                target=target,
                path=path,
                status=response.status,
            )

        if response.status == 404:
            controller.on_success()
            raise UpstreamNotFoundError(f"GET {path} → 404", target=target, path=path, status=404)
        if response.status == 401 or response.status >= 500:
            raise UpstreamTransientError(
                f"GET {path} → {response.status}", target=target, path=path, status=response.status
            )
        if 400 <= response.status < 500:
            controller.on_success()
            raise UpstreamPermanentError(
                f"GET {path} → {response.status}", target=target, path=path, status=response.status
            )

        controller.on_success()
        return response
