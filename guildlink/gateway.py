from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import aiohttp

LOGGER = logging.getLogger(__name__)

USER_AGENT = "guildlink (+https://github.com/guildlink/guildlink)"

RATE_LIMIT_REMAINING = "X-RateLimit-Remaining"
RATE_LIMIT_RESET_AFTER = "X-RateLimit-Reset-After"
RATE_LIMIT_BUCKET = "X-RateLimit-Bucket"
HTTP_429_BUCKET = "http429"
RESET_MARGIN = 0.01

DEBUG_HEADERS = {
    "retry-after",
    "x-ratelimit-global",
    "x-ratelimit-limit",
    RATE_LIMIT_REMAINING.lower(),
    "x-ratelimit-reset",
    RATE_LIMIT_RESET_AFTER.lower(),
    RATE_LIMIT_BUCKET.lower(),
}


@dataclass
class RateLimit:
    remaining: int
    reset_after: float
    observed_at: float


@dataclass
class HttpResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    def header(self, name: str) -> str:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return str(value)
        return ""


class RemoteError(IntEnum):
    """Discord JSON error codes this integration branches on."""

    UNKNOWN_MEMBER = 10007
    BANNED = 40007


@dataclass(frozen=True)
class LastError:
    status: int = 0
    body: str = ""

    @property
    def code(self) -> Optional[RemoteError]:
        """Known Discord error code embedded in the JSON error body, if any."""
        if not self.body:
            return None
        try:
            payload = json.loads(self.body)
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        code = payload.get("code")
        if isinstance(code, bool) or not isinstance(code, int):
            return None
        try:
            return RemoteError(code)
        except ValueError:
            return None


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    redacted = dict(headers)
    for name in list(redacted):
        if name.lower() == "authorization":
            scheme = str(redacted[name]).split(" ")[0]
            redacted[name] = f"{scheme} ****"
    return redacted


def debug_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: v for k, v in headers.items() if k.lower() in DEBUG_HEADERS}


class RateLimitedGateway:
    """HTTP gateway that respects Discord's bucket based rate limits.

    The throttle is coarse: before each call the smallest
    ``remaining`` and the largest outstanding reset time across *all* known
    buckets decide whether to wait, so one exhausted bucket stalls every
    request made through this instance.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        *,
        timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._clock = clock
        self._sleep = sleep
        self._rate_limits: Dict[str, RateLimit] = {}
        self._lock = asyncio.Lock()
        self.last_error = LastError()

    @property
    def buckets(self) -> Dict[str, RateLimit]:
        return dict(self._rate_limits)

    async def close(self):
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    def rate_limit_wait(self) -> Tuple[int, Optional[int]]:
        """Return (seconds to wait, smallest remaining count) over all buckets."""
        now = self._clock()
        wait = 0
        remaining: Optional[int] = None
        for limit in self._rate_limits.values():
            outstanding = limit.observed_at + limit.reset_after + RESET_MARGIN - now
            wait = max(wait, math.ceil(outstanding))
            remaining = (
                limit.remaining if remaining is None else min(remaining, limit.remaining)
            )
        return wait, remaining

    async def api_request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: str | bytes | None = None,
    ) -> Optional[str]:
        # https://discord.com/developers/docs/topics/rate-limits
        async with self._lock:
            wait, remaining = self.rate_limit_wait()
        if remaining is not None and remaining < 1 and wait > 0:
            LOGGER.info("Rate limit: remaining < 1, sleeping %s second(s)", wait)
            await self._sleep(wait)

        result, response = await self._perform(method, url, headers, body)

        if response is not None:
            async with self._lock:
                self._record_rate_limits(response)
        return result

    async def send_request(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        body: str | bytes | None = None,
    ) -> Optional[str]:
        result, _response = await self._perform(method, url, headers, body)
        return result

    def _record_rate_limits(self, response: HttpResponse):
        # X-RateLimit-Reset is not used in case the local clock is wrong.
        remaining = response.header(RATE_LIMIT_REMAINING)
        reset_after = response.header(RATE_LIMIT_RESET_AFTER)
        bucket = response.header(RATE_LIMIT_BUCKET)
        if remaining != "" and reset_after and bucket:
            try:
                self._rate_limits[bucket] = RateLimit(
                    remaining=int(remaining),
                    reset_after=float(reset_after),
                    observed_at=self._clock(),
                )
            except ValueError:
                LOGGER.warning(
                    "Ignoring malformed rate limit headers for bucket %s: %s/%s",
                    bucket,
                    remaining,
                    reset_after,
                )
        if response.status == 429:
            try:
                payload = json.loads(response.body or "null")
            except ValueError:
                payload = None
            retry_after = payload.get("retry_after") if isinstance(payload, dict) else None
            if isinstance(retry_after, (int, float)):
                # Observed in milliseconds, not seconds as documented.
                self._rate_limits[HTTP_429_BUCKET] = RateLimit(
                    remaining=0,
                    reset_after=round(retry_after / 1000, 1),
                    observed_at=self._clock(),
                )

    async def _perform(
        self,
        method: str,
        url: str,
        headers: Optional[Mapping[str, str]],
        body: str | bytes | None,
    ) -> Tuple[Optional[str], Optional[HttpResponse]]:
        request_headers = dict(headers or {})
        self.last_error = LastError()
        try:
            response = await self._send(method, url, request_headers, body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            LOGGER.error("Request %s %s failed: %s", method, url, exc or type(exc).__name__)
            return None, None

        if response.status < 200 or response.status > 299:
            LOGGER.error(
                "Request: %s %s %s, Response: %s %s %s",
                method,
                url,
                json.dumps(redact_headers(request_headers)),
                response.status,
                response.body,
                json.dumps(debug_headers(response.headers)),
            )
            self.last_error = LastError(status=response.status, body=response.body)
            return None, response
        return response.body, response

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: str | bytes | None,
    ) -> HttpResponse:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        send_headers = {"User-Agent": USER_AGENT, **headers}
        async with self._session.request(
            method, url, headers=send_headers, data=body
        ) as resp:
            text = await resp.text(errors="replace")
            return HttpResponse(resp.status, dict(resp.headers), text)
