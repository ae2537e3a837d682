"""Discord webhook notifications"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from .base import BaseProvider, NotificationChannel, NotificationMessage, NotificationPriority, SendResult

logger = logging.getLogger(__name__)

WEBHOOK_PREFIXES = ('https://discord.com/api/webhooks/', 'https://discordapp.com/api/webhooks/')

# Discord embed limits
MAX_DESCRIPTION = 2048
MAX_FIELDS = 25
MAX_FIELD_VALUE = 1024

# Metadata keys shown as embed fields, in display order
FIELD_LABELS = {
    'title': "Item",
    'rule': "Rule",
    'action_at': "Scheduled",
    'show_id': "Show",
    'viewer_id': "Viewer",
    'urgency': "Urgency",
    'days_until_needed': "Needed In (days)",
    'episodes_per_day': "Episodes/Day",
    'change_percent': "Change %",
    'matches': "Matches",
    'queued': "Queued",
    'deleted': "Deleted",
    'errors': "Errors",
    'service': "Service",
    'error': "Error",
}


class DiscordProvider(BaseProvider):
    """Posts one embed per notification to a Discord webhook"""

    channel = NotificationChannel.DISCORD

    COLORS = {
        NotificationPriority.LOW: 0x95a5a6,      # Gray
        NotificationPriority.NORMAL: 0x3498db,   # Blue
        NotificationPriority.HIGH: 0xf39c12,     # Orange
        NotificationPriority.URGENT: 0xe74c3c,   # Red
    }

    def validate_config(self) -> Tuple[bool, Optional[str]]:
        webhook_url = self.config.get('webhook_url')
        if not webhook_url:
            return False, "Discord webhook URL is required"
        if not webhook_url.startswith(WEBHOOK_PREFIXES):
            return False, "Invalid Discord webhook URL format"
        return True, None

    async def send(self, message: NotificationMessage) -> SendResult:
        if not self.enabled:
            return self._disabled()
        logger.debug(f"Posting {message.event_type} to Discord")
        return await self._post(self.config['webhook_url'], self.format_message(message))

    @staticmethod
    def _fields(metadata: Dict[str, Any]) -> List[Dict[str, Any]]:
        fields = []
        if metadata.get('season') is not None and metadata.get('episode') is not None:
            fields.append({
                "name": "Episode",
                "value": f"S{metadata['season']:02d}E{metadata['episode']:02d}",
                "inline": True,
            })
        for key, label in FIELD_LABELS.items():
            value = metadata.get(key)
            if value is None or isinstance(value, (dict, list)):
                continue
            if isinstance(value, float):
                value = f"{value:.2f}"
            fields.append({"name": label, "value": str(value)[:MAX_FIELD_VALUE], "inline": True})
        return fields[:MAX_FIELDS]

    def format_message(self, message: NotificationMessage) -> Dict[str, Any]:
        embed = {
            "title": message.title or message.event_type.replace('.', ' ').title(),
            "description": message.content[:MAX_DESCRIPTION],
            "color": self.COLORS.get(message.priority, self.COLORS[NotificationPriority.NORMAL]),
            "footer": {"text": f"Culler · {message.event_type}"},
        }
        fields = self._fields(message.metadata)
        if fields:
            embed["fields"] = fields

        payload = {"embeds": [embed]}
        if self.config.get('username'):
            payload["username"] = self.config['username']
        return payload
