#!/usr/bin/env python3
"""
Albion Online gameinfo API client.

Fetches one page of battles from the public battles endpoint. The endpoint is
paginated by offset and returns the most recent battles first. Failures are
reported as TransportError; retrying is left to the caller.
"""

from time import time
from typing import Any, Dict, List, Optional
from asyncio import TimeoutError
from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import TransportError
from telemetry import trace_span

logger = get_logger("gameinfo")

HTTP_OK = 200


def _format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


@trace_span(
    "gameinfo.fetch_battles_page",
    tracer_name="gameinfo",
    attr_from_args=lambda offset, limit, sort=None, session=None: {
        "battles.offset": offset,
        "battles.limit": limit,
    },
)
async def fetch_battles_page(offset: int, limit: int, sort: Optional[str] = None, session: Optional[ClientSession] = None) -> List[Dict[str, Any]]:
    """Fetch a single page of battles, newest first.

    Args:
        offset: Number of battles to skip (0 = most recent)
        limit:  Page size
        sort:   Sort mode understood by the API (defaults to config.BATTLES_SORT)
        session: Optional shared aiohttp ClientSession to reuse

    Returns:
        List of battle dicts as returned by the API

    Raises:
        TransportError: on connection errors, timeouts, non-200 responses or
                        an unexpected response body
    """
    if offset < 0:
        raise ValueError(f"offset must be non-negative, got {offset}")
    if limit <= 0:
        raise ValueError(f"limit must be positive, got {limit}")

    params = {
        "offset": str(offset),
        "limit": str(limit),
        "sort": sort or config.BATTLES_SORT,
        # Cache buster, the CDN in front of gameinfo serves stale pages otherwise
        "timestamp": str(int(time())),
    }
    headers = {
        "User-Agent": config.USER_AGENT,
        "Accept": "application/json",
    }
    timeout = ClientTimeout(total=max(int(config.HTTP_TIMEOUT), 1))

    async def _execute(client: ClientSession) -> List[Dict[str, Any]]:
        async with client.get(config.BATTLES_ENDPOINT, params=params, headers=headers, timeout=timeout) as resp:
            if resp.status != HTTP_OK:
                raise TransportError(f"HTTP {resp.status}", offset=offset, details={"status": resp.status})
            data = await resp.json(content_type=None)
            if not isinstance(data, list):
                raise TransportError(
                    f"Unexpected battles response format: {type(data).__name__}",
                    offset=offset,
                    details={"type": type(data).__name__},
                )
            return data

    logger.debug(f"Fetching battles with offset: {offset}")
    try:
        if session is None:
            async with ClientSession(timeout=timeout) as owned_session:
                return await _execute(owned_session)
        return await _execute(session)
    except TimeoutError as e:
        raise TransportError(f"Timed out after {timeout.total}s", offset=offset, details={"error": "timeout"}) from e
    except ClientError as e:
        raise TransportError(_format_client_error(e), offset=offset, details={"error": e.__class__.__name__}) from e
    except ValueError as e:
        # Malformed JSON body
        raise TransportError(f"Invalid JSON in battles response: {e}", offset=offset) from e
