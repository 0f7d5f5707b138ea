from __future__ import annotations

import asyncio
from typing import Dict, Optional
from aiohttp import ClientSession, ClientTimeout
import aiohttp
import logging

from ..errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


async def fetch_text(
    session: ClientSession,
    url: str,
    *,
    timeout: float = 30.0,
    user_agent: Optional[str] = None,
) -> str:
    """
    Fetch a URL and return body text. Raises TransportError on any failure;
    retrying is left to the caller.
    """
    headers: Dict[str, str] = dict(DEFAULT_HEADERS)
    if user_agent:
        headers["User-Agent"] = user_agent

    try:
        async with session.get(url, headers=headers, timeout=ClientTimeout(total=timeout)) as resp:
            resp.raise_for_status()
            return await resp.text()
    except aiohttp.ClientResponseError as exc:
        raise TransportError(f"HTTP {exc.status} for {url}", key=url, cause=exc) from exc
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.debug("fetch_text failed for %s: %r", url, exc)
        raise TransportError(f"{exc.__class__.__name__} for {url}", key=url, cause=exc) from exc


def create_session() -> ClientSession:
    """
    Create a shared aiohttp ClientSession.
    """
    # Note: caller is responsible for closing the session (await session.close()).
    connector = aiohttp.TCPConnector(limit=0)  # unlimited; concurrency managed by the worker pool
    return aiohttp.ClientSession(connector=connector)
