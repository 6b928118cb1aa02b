"""Shared httpx helpers used by every adapter.

- No retries
- No logging of request/response bodies
- Non-2xx responses raise httpx.HTTPStatusError with the body already read,
  so error classification can extract the backend's message
"""

import asyncio
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

import httpx

from llmgate.errors import GatewayTimeoutError

_EOF = object()


def build_timeout(timeout_s: float) -> httpx.Timeout:
    """httpx timeout for one call; connect is capped at 10s."""
    return httpx.Timeout(timeout_s, connect=min(10.0, timeout_s))


@asynccontextmanager
async def client_session(
    client: httpx.AsyncClient | None, timeout_s: float
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the shared client, or a short-lived one owned by this call."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=build_timeout(timeout_s)) as owned:
        yield owned


async def post_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: Mapping[str, str],
    body: Mapping[str, Any],
    timeout_s: float,
) -> dict:
    """POST a JSON body and return the decoded JSON response.

    The whole exchange races against timeout_s; on expiry the request is
    cancelled and asyncio.TimeoutError propagates.
    """
    response = await asyncio.wait_for(
        client.post(url, headers=dict(headers), json=body, timeout=build_timeout(timeout_s)),
        timeout_s,
    )
    response.raise_for_status()
    return response.json()


async def get_json(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: Mapping[str, str],
    timeout_s: float,
) -> dict:
    """GET a URL and return the decoded JSON response."""
    response = await asyncio.wait_for(
        client.get(url, headers=dict(headers), timeout=build_timeout(timeout_s)),
        timeout_s,
    )
    response.raise_for_status()
    return response.json()


@asynccontextmanager
async def open_stream(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: Mapping[str, str],
    body: Mapping[str, Any],
    timeout_s: float,
) -> AsyncIterator[httpx.Response]:
    """Open a streaming POST. The response is closed when the context exits."""
    async with client.stream(
        "POST",
        url,
        headers=dict(headers),
        json=body,
        timeout=build_timeout(timeout_s),
    ) as response:
        if response.is_error:
            await response.aread()
            response.raise_for_status()
        yield response


async def iter_frames(
    response: httpx.Response, *, timeout_s: float, provider: str
) -> AsyncIterator[bytes]:
    """Yield raw body frames, racing each read against timeout_s.

    The response is closed when the timeout fires, when the body ends, and
    when the consumer stops iterating early.

    Raises:
        GatewayTimeoutError: If no frame arrives within timeout_s.
    """
    source = response.aiter_bytes()
    try:
        while True:
            try:
                frame = await asyncio.wait_for(anext(source, _EOF), timeout_s)
            except asyncio.TimeoutError as exc:
                await response.aclose()
                raise GatewayTimeoutError(provider, timeout_s) from exc
            if frame is _EOF:
                return
            yield frame
    finally:
        await response.aclose()
