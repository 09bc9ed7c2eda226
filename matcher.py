#!/usr/bin/env python3
"""
Per-subscriber battle matching.

A battle is relevant to a subscriber when it carries fame and at least one of
its players, guilds or alliances is tracked by that subscriber.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional

from config import get_logger
from subscribers import TrackingConfig

logger = get_logger("matcher")


def _has_tracked(entities: Optional[Mapping[str, Any]], tracked: set) -> bool:
    # Malformed upstream maps count as empty
    if not isinstance(entities, Mapping) or not tracked:
        return False
    return any(str(entity_id) in tracked for entity_id in entities.keys())


def is_relevant(battle: Dict[str, Any], tracking: TrackingConfig) -> bool:
    """Return True if `battle` should be notified under `tracking`."""
    # Ignore battles without fame
    if (battle.get('totalFame') or 0) <= 0:
        return False
    return (
        _has_tracked(battle.get('players'), tracking.tracked_players)
        or _has_tracked(battle.get('guilds'), tracking.tracked_guilds)
        or _has_tracked(battle.get('alliances'), tracking.tracked_alliances)
    )


def match_battles(battles: Iterable[Dict[str, Any]], tracking: Optional[TrackingConfig]) -> List[Dict[str, Any]]:
    """Filter `battles` (oldest first) down to the ones relevant to a subscriber.

    Order is preserved. A missing configuration matches nothing.
    """
    if tracking is None:
        return []
    return [battle for battle in battles if is_relevant(battle, tracking)]


def match_battles_by_subscriber(
    battles: List[Dict[str, Any]],
    configs: Mapping[str, Optional[TrackingConfig]],
    subscriber_ids: Optional[Iterable[str]] = None,
) -> Dict[str, List[Dict[str, Any]]]:
    """Match a batch of battles against every subscriber.

    Args:
        battles: Unread battles, oldest first
        configs: Tracking configuration per subscriber id (None if unconfigured)
        subscriber_ids: Explicit processing order (defaults to sorted config keys)

    Returns:
        Mapping of subscriber id to matched battles, in the given order,
        omitting subscribers with no matches.
    """
    ordered_ids = list(subscriber_ids) if subscriber_ids is not None else sorted(configs.keys())
    battles_by_subscriber: Dict[str, List[Dict[str, Any]]] = {}
    for subscriber_id in ordered_ids:
        matched = match_battles(battles, configs.get(subscriber_id))
        if matched:
            battles_by_subscriber[subscriber_id] = matched
    logger.debug(f"Matched battles for {len(battles_by_subscriber)} of {len(ordered_ids)} subscribers")
    return battles_by_subscriber
