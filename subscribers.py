#!/usr/bin/env python3
"""
Subscriber directory backed by subscribers.yaml.

Each subscriber (a Discord guild, typically) tracks a set of players, guilds
and alliances and owns the webhook(s) notifications are posted to.

Example subscribers.yaml:
```yaml
subscribers:
  "123456789":
    name: "My Guild"
    lang: en
    webhook_url: "https://discord.com/api/webhooks/..."
    channels:
      battles: "https://discord.com/api/webhooks/..."
    tracked:
      players:
        - id: "aBcD1234"
          name: "SomePlayer"
      guilds: ["gUiLd5678"]
      alliances: []
```
"""

from typing import Any, Dict, Iterable, List, Optional, Set

from config import config, get_logger
from utils import normalize_entity_ids

logger = get_logger("subscribers")

MAX_SUBSCRIBERS_FILE_SIZE = 5 * 1024 * 1024


class TrackingConfig:
    """Entity ids a subscriber wants to hear about."""

    def __init__(self, players: Optional[Iterable[Any]] = None, guilds: Optional[Iterable[Any]] = None, alliances: Optional[Iterable[Any]] = None):
        self.tracked_players: Set[str] = normalize_entity_ids(players)
        self.tracked_guilds: Set[str] = normalize_entity_ids(guilds)
        self.tracked_alliances: Set[str] = normalize_entity_ids(alliances)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TrackingConfig":
        data = data or {}
        return cls(
            players=data.get('players') or data.get('trackedPlayers'),
            guilds=data.get('guilds') or data.get('trackedGuilds'),
            alliances=data.get('alliances') or data.get('trackedAlliances'),
        )

    def is_empty(self) -> bool:
        return not (self.tracked_players or self.tracked_guilds or self.tracked_alliances)

    def __repr__(self) -> str:
        return (f"TrackingConfig(players={len(self.tracked_players)}, "
                f"guilds={len(self.tracked_guilds)}, alliances={len(self.tracked_alliances)})")


class Subscriber:
    """A notification target with its own tracking configuration."""

    def __init__(self, subscriber_id: str, name: Optional[str] = None, lang: str = "en",
                 webhook_url: Optional[str] = None, channels: Optional[Dict[str, str]] = None,
                 tracking: Optional[TrackingConfig] = None):
        self.id = str(subscriber_id)
        self.name = name or self.id
        self.lang = lang or "en"
        self.webhook_url = webhook_url
        self.channels = dict(channels or {})
        self.tracking = tracking

    def webhook_for(self, channel: str) -> Optional[str]:
        """Return the webhook URL for a channel tag, falling back to the default webhook."""
        return self.channels.get(channel) or self.webhook_url

    def __repr__(self) -> str:
        return f"Subscriber({self.id!r}, name={self.name!r})"


class SubscriberDirectory:
    """Loads subscribers from YAML and answers tracking-configuration lookups."""

    def __init__(self, config_path: Optional[str] = None, subscribers: Optional[Iterable[Subscriber]] = None):
        self.config_path = config_path or config.SUBSCRIBERS_CONFIG_PATH
        self.subscribers: Dict[str, Subscriber] = {}
        if subscribers is not None:
            self.subscribers = {s.id: s for s in subscribers}
        else:
            self.reload()

    def reload(self) -> None:
        """Re-read the subscribers file. Invalid entries are skipped with a warning."""
        data = config.read_yaml_file(self.config_path, MAX_SUBSCRIBERS_FILE_SIZE, 'subscribers')
        section = data.get('subscribers') if isinstance(data, dict) else None
        if not isinstance(section, dict):
            if data is not None:
                logger.warning(f"No valid subscribers found in {self.config_path}")
            self.subscribers = {}
            return

        loaded: Dict[str, Subscriber] = {}
        for subscriber_id, entry in section.items():
            if entry is None:
                # Known subscriber without any configuration yet
                loaded[str(subscriber_id)] = Subscriber(subscriber_id)
                continue
            if not isinstance(entry, dict):
                logger.warning(f"Skipping invalid subscriber configuration for '{subscriber_id}': {entry}")
                continue
            tracked = entry.get('tracked')
            channels = entry.get('channels') if isinstance(entry.get('channels'), dict) else {}
            loaded[str(subscriber_id)] = Subscriber(
                subscriber_id,
                name=entry.get('name'),
                lang=entry.get('lang', 'en'),
                webhook_url=entry.get('webhook_url'),
                channels={str(k): str(v) for k, v in channels.items() if v},
                tracking=TrackingConfig.from_dict(tracked) if isinstance(tracked, dict) else None,
            )

        self.subscribers = loaded
        logger.info(f"Loaded {len(self.subscribers)} subscribers from {self.config_path}")

    def active_ids(self) -> List[str]:
        """Ids of all known subscribers, sorted for a stable dispatch order."""
        return sorted(self.subscribers.keys())

    def get(self, subscriber_id: str) -> Optional[Subscriber]:
        return self.subscribers.get(str(subscriber_id))

    def get_configs(self, subscriber_ids: Iterable[str]) -> Dict[str, Optional[TrackingConfig]]:
        """Map each requested subscriber id to its tracking configuration (None if absent)."""
        configs: Dict[str, Optional[TrackingConfig]] = {}
        for subscriber_id in subscriber_ids:
            subscriber = self.subscribers.get(str(subscriber_id))
            configs[str(subscriber_id)] = subscriber.tracking if subscriber else None
        return configs
