"""
Shared HTTP client with timeouts and optional retries for marketplace APIs.
Network failures surface as TransportError; non-2xx responses as ProviderError.
"""
import asyncio
import logging
from typing import Any, Optional

import httpx

from channelsync.errors import ProviderError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRIES = 2
RETRY_BACKOFF_BASE = 1.0  # seconds
MAX_RETRY_AFTER = 30.0


def retry_delay(attempt: int, resp: Optional[httpx.Response] = None) -> float:
    """Seconds to wait before the next attempt: the provider's Retry-After if it sent one, else exponential backoff."""
    retry_after = resp.headers.get("Retry-After") if resp is not None else None
    if retry_after:
        try:
            return min(max(float(retry_after), 0.0), MAX_RETRY_AFTER)
        except ValueError:
            logger.debug("Ignoring non-numeric Retry-After %r", retry_after)
    if attempt <= 0:
        return 0.0
    return min(RETRY_BACKOFF_BASE * (2 ** (attempt - 1)), 10.0)


async def _sleep_backoff(attempt: int, resp: Optional[httpx.Response] = None) -> None:
    delay = retry_delay(attempt, resp)
    if delay > 0:
        await asyncio.sleep(delay)


async def request_with_retry(
    method: str,
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
    retry_on: tuple[int, ...] = (429, 502, 503, 504),
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **kwargs: Any,
) -> httpx.Response:
    """
    Perform HTTP request with timeout and optional retries for rate limits and server/network errors.
    Only use for idempotent reads; POSTs that create resources go through a single attempt.
    """
    last_exc: Optional[Exception] = None
    for attempt in range(max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
                resp = await client.request(method, url, **kwargs)
            if attempt < max_retries and resp.status_code in retry_on:
                logger.warning("HTTP %s %s -> %s, retrying (attempt %s)", method, url, resp.status_code, attempt + 1)
                await _sleep_backoff(attempt + 1, resp)
                continue
            return resp
        except (httpx.ConnectError, httpx.ReadTimeout, httpx.ConnectTimeout) as e:
            last_exc = e
            if attempt < max_retries:
                logger.warning("HTTP %s %s attempt %s failed: %s", method, url, attempt + 1, e)
                await _sleep_backoff(attempt + 1)
            else:
                raise
    if last_exc:
        raise last_exc
    return resp  # type: ignore


async def provider_request(
    method: str,
    url: str,
    *,
    provider: str,
    timeout: float = DEFAULT_TIMEOUT,
    retry: bool = False,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **kwargs: Any,
) -> httpx.Response:
    """Single provider call. Converts httpx failures into TransportError; status codes are left to the caller."""
    try:
        if retry:
            resp = await request_with_retry(method, url, timeout=timeout, transport=transport, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
                resp = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        logger.warning("%s API %s %s timed out", provider, method, url)
        raise TransportError(f"{provider} request timed out: {method} {url}", provider=provider) from e
    except httpx.HTTPError as e:
        logger.warning("%s API %s %s failed: %s", provider, method, url, e)
        raise TransportError(f"{provider} request failed: {e}", provider=provider) from e

    if resp.status_code >= 400:
        logger.warning("%s API %s %s -> %s %s", provider, method, url, resp.status_code, (resp.text or "")[:200])
    else:
        logger.debug("%s API %s %s -> %s", provider, method, url, resp.status_code)
    return resp


def error_message(resp: httpx.Response) -> str:
    """Best-effort human message from a provider error body."""
    try:
        data = resp.json()
    except ValueError:
        return (resp.text or "")[:200] or f"HTTP {resp.status_code}"
    if isinstance(data, dict):
        for key in ("error_description", "error", "errors", "message"):
            value = data.get(key)
            if value:
                return str(value)[:200]
    return str(data)[:200]


def raise_for_provider_status(resp: httpx.Response, *, provider: str, operation: str) -> None:
    if resp.status_code < 400:
        return
    raise ProviderError(
        f"{provider} {operation} failed: HTTP {resp.status_code} - {error_message(resp)}",
        status_code=resp.status_code,
        provider=provider,
    )


def parse_json(resp: httpx.Response, *, provider: str, operation: str) -> Any:
    try:
        return resp.json()
    except ValueError as e:
        raise ProviderError(
            f"{provider} {operation} returned invalid JSON",
            status_code=resp.status_code,
            retryable=True,
            provider=provider,
        ) from e
