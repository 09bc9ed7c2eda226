#!/usr/bin/env python3
"""
Utility classes and functions for the battle notifier.

This module contains shared utilities used by both the fetcher and the
notifier: retry pacing, duration formatting and entity id normalization.
"""

from asyncio import sleep
from typing import Any, Iterable, Optional, Set

# Import config to use unified logging
from config import get_logger

# Module-specific logger
logger = get_logger("utils")


class RetryHelper:
    """Helper class for pacing retries of a failing operation.

    Supports fixed delays (the gameinfo API just needs time to recover) and
    exponential backoff. A `max_retries` of None or 0 never gives up.
    """

    def __init__(self, max_retries: Optional[int] = None, base_delay: float = 5.0, max_delay: float = 60.0, exponential: bool = False):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts (None/0 for unlimited)
            base_delay: Delay in seconds (base for exponential backoff)
            max_delay: Maximum delay in seconds between retries
            exponential: Double the delay on each attempt when True
        """
        self.max_retries = max_retries or None
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential = exponential

    def should_retry(self, attempt: int) -> bool:
        """Return True if another retry is allowed after `attempt` failures (0-based)."""
        return self.max_retries is None or attempt < self.max_retries

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt.

        Args:
            attempt: The current attempt number (0-based)

        Returns:
            Delay in seconds
        """
        if not self.exponential:
            return self.base_delay
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt.

        Args:
            attempt: The current attempt number (0-based)
        """
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)


def normalize_entity_ids(entries: Optional[Iterable[Any]]) -> Set[str]:
    """Collect tracked entity ids from a list of strings or {id: ...} mappings.

    Args:
        entries: Iterable of id strings or mappings carrying an "id" key

    Returns:
        Set of non-empty id strings
    """
    ids: Set[str] = set()
    for entry in entries or []:
        value = entry.get("id") if isinstance(entry, dict) else entry
        if value is None:
            continue
        value = str(value).strip()
        if value:
            ids.add(value)
    return ids
