"""
Outbound HTTP for the ShipStation V2 API.

Every call has a hard timeout. Idempotent GETs are retried on gateway errors,
connection failures and ShipStation's 429 rate limit; for 429 the wait comes
from Retry-After or X-Rate-Limit-Reset when ShipStation sends one.
"""
import asyncio
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRIES = 2
RETRY_BACKOFF_BASE = 1.0  # seconds
MAX_RETRY_WAIT = 30.0
RETRY_STATUSES = (429, 502, 503, 504)


def retry_wait(attempt: int, response: Optional[httpx.Response] = None) -> float:
    """Seconds to wait before retry number `attempt` (1-based)."""
    if response is not None and response.status_code == 429:
        for header in ("retry-after", "x-rate-limit-reset"):
            value = response.headers.get(header)
            if value:
                try:
                    return min(max(float(value), 0.0), MAX_RETRY_WAIT)
                except ValueError:
                    logger.debug("Ignoring non-numeric %s header: %r", header, value)
    return min(RETRY_BACKOFF_BASE * (2 ** (attempt - 1)), MAX_RETRY_WAIT)


async def get_with_retry(
    url: str,
    *,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_RETRIES,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    """
    GET with retries. Returns the last response when retries run out on a
    retryable status; re-raises the last connection error or timeout.
    """
    request_kwargs: dict[str, Any] = {"params": params, "headers": headers}
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        for attempt in range(max_retries + 1):
            try:
                resp = await client.get(url, **request_kwargs)
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                if attempt >= max_retries:
                    raise
                wait = retry_wait(attempt + 1)
                logger.warning("GET %s attempt %s failed: %s; retrying in %.1fs", url, attempt + 1, e, wait)
                await asyncio.sleep(wait)
                continue

            if resp.status_code in RETRY_STATUSES and attempt < max_retries:
                wait = retry_wait(attempt + 1, resp)
                logger.warning("GET %s returned %s; retrying in %.1fs", url, resp.status_code, wait)
                await asyncio.sleep(wait)
                continue
            return resp
    raise RuntimeError("unreachable: retry loop exited without a response")
