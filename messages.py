#!/usr/bin/env python3
"""
Rendering of battle notifications.

Turns a stored battle into a Discord-style webhook payload. The embed body is
rendered from templates/battle.md.j2.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader

from config import config, get_logger
from utils import format_duration

logger = get_logger("messages")

MAX_GUILDS_LISTED = 10
MAX_DESCRIPTION_LENGTH = 4096
EMBED_COLOR = 0xE67E22

env = Environment(loader=FileSystemLoader(config.TEMPLATES_PATH), trim_blocks=True, lstrip_blocks=True)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _by_fame(entities: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    values = [e for e in (entities or {}).values() if isinstance(e, dict)]
    return sorted(values, key=lambda e: e.get('killFame') or 0, reverse=True)


def battle_url(battle: Dict[str, Any], lang: str = "en") -> str:
    """Killboard URL for a battle."""
    return f"{config.KILLBOARD_BASE_URL.rstrip('/')}/{lang}/killboard/battles/{battle['id']}"


def render_battle(battle: Dict[str, Any], lang: str = "en") -> Dict[str, Any]:
    """Render a battle into a webhook payload.

    Args:
        battle: Battle document as stored
        lang: Subscriber language, used for the killboard link

    Returns:
        A JSON-serializable payload with a single embed
    """
    start = _parse_time(battle.get('startTime'))
    end = _parse_time(battle.get('endTime'))
    duration = format_duration((end - start).total_seconds()) if start and end else None

    guilds = _by_fame(battle.get('guilds'))
    description = env.get_template('battle.md.j2').render(
        battle=battle,
        duration=duration,
        alliances=_by_fame(battle.get('alliances')),
        guilds=guilds[:MAX_GUILDS_LISTED],
        more_guilds=max(len(guilds) - MAX_GUILDS_LISTED, 0),
    ).strip()
    if len(description) > MAX_DESCRIPTION_LENGTH:
        description = description[:MAX_DESCRIPTION_LENGTH - 1] + "…"

    embed: Dict[str, Any] = {
        "title": f"Battle {battle['id']}",
        "url": battle_url(battle, lang),
        "description": description,
        "color": EMBED_COLOR,
        "footer": {"text": f"{len(battle.get('players') or {})} players"},
    }
    if start:
        embed["timestamp"] = start.isoformat()
    return {"embeds": [embed]}
