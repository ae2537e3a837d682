"""Main notification service orchestrator"""

import logging
from typing import Dict, Any, List, Optional, Callable
from datetime import datetime, timedelta, timezone

from culler.api.services.collaborators import Notifier
from culler.api.services.settings_service import NotificationSettings
from .providers.base import (
    BaseProvider, NotificationMessage, NotificationChannel, NotificationEvent,
    NotificationPriority, SendResult
)
from .providers.discord import DiscordProvider
from .providers.webhook import WebhookProvider

logger = logging.getLogger(__name__)

EVENT_PRIORITIES = {
    NotificationEvent.ERROR: NotificationPriority.HIGH,
    NotificationEvent.SERVICE_DOWN: NotificationPriority.URGENT,
    NotificationEvent.REDOWNLOAD_TRIGGERED: NotificationPriority.HIGH,
    NotificationEvent.VELOCITY_CHANGED: NotificationPriority.LOW,
    NotificationEvent.QUEUE_ADDED: NotificationPriority.LOW,
}

# Event type -> NotificationSettings toggle
EVENT_TOGGLES = {
    NotificationEvent.QUEUE_ADDED: "events_queue_added",
    NotificationEvent.MEDIA_DELETED: "events_media_deleted",
    NotificationEvent.RULE_COMPLETED: "events_rule_completed",
    NotificationEvent.ERROR: "events_error",
    NotificationEvent.SERVICE_DOWN: "events_service_down",
    NotificationEvent.VIPER_CLEANUP: "events_viper_cleanup",
    NotificationEvent.VELOCITY_CHANGED: "events_velocity_changed",
    NotificationEvent.REDOWNLOAD_TRIGGERED: "events_redownload_triggered",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationService(Notifier):
    """Central notification service for orchestrating notifications"""

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self.providers: Dict[NotificationChannel, BaseProvider] = {}
        self.settings = NotificationSettings()
        self.enabled = False
        self._clock = clock
        self._recent: Dict[str, datetime] = {}

    def initialize(self, settings: NotificationSettings) -> None:
        """(Re)build providers from settings"""
        self.settings = settings
        self.enabled = settings.enabled
        self.providers = {}
        self._recent = {}

        if not self.enabled:
            logger.info("Notification service is disabled")
            return

        if settings.discord_enabled:
            self.providers[NotificationChannel.DISCORD] = DiscordProvider({
                'enabled': True,
                'webhook_url': settings.discord_webhook_url,
                'username': settings.discord_username,
            })

        if settings.webhook_enabled:
            self.providers[NotificationChannel.WEBHOOK] = WebhookProvider({
                'enabled': True,
                'endpoints': settings.webhook_endpoints,
            })

        for channel, provider in self.providers.items():
            is_valid, error = provider.validate_config()
            if not is_valid:
                logger.error(f"Invalid config for {channel.value}: {error}")
                provider.enabled = False

        logger.info(f"Notification service initialized with {len(self.providers)} providers")

    def is_subscribed(self, event_type: str) -> bool:
        try:
            toggle = EVENT_TOGGLES[NotificationEvent(event_type)]
        except (ValueError, KeyError):
            return False
        return getattr(self.settings, toggle)

    async def notify(self, event: str, data: Dict[str, Any]) -> None:
        await self.send_event(event, data)

    async def send_event(
        self,
        event_type: str,
        data: Dict[str, Any],
        priority: Optional[NotificationPriority] = None,
    ) -> List[SendResult]:
        """Send notification for an event to every enabled provider"""
        if not self.enabled:
            return []

        if not self.is_subscribed(event_type):
            logger.debug(f"Not subscribed to {event_type}")
            return []

        message = self._create_message(event_type, data, priority)

        if self._is_duplicate(message):
            logger.debug(f"Skipping duplicate notification for {event_type}")
            return []

        results = []
        for channel, provider in self.providers.items():
            if not provider.is_enabled():
                continue
            result = await provider.send(message)
            if not result.success:
                logger.warning(f"Notification {event_type} via {channel.value} failed: {result.error}")
            results.append(result)

        return results

    async def test_channel(self, channel: NotificationChannel) -> SendResult:
        """Test a specific notification channel"""
        provider = self.providers.get(channel)
        if provider is None:
            return SendResult(success=False, channel=channel, error=f"Provider {channel.value} not configured")

        is_valid, error = provider.validate_config()
        if not is_valid:
            return SendResult(success=False, channel=channel, error=f"Invalid configuration: {error}")

        return await provider.send(NotificationMessage(
            event_type=NotificationEvent.TEST.value,
            title="Culler Test Notification",
            content=f"This is a test notification from Culler sent at {self._clock().isoformat()}",
            priority=NotificationPriority.LOW,
            metadata={"test": True},
        ))

    def _is_duplicate(self, message: NotificationMessage) -> bool:
        window = timedelta(seconds=self.settings.dedup_window_seconds)
        now = self._clock()
        self._recent = {k: t for k, t in self._recent.items() if now - t < window}
        key = message.get_idempotency_key()
        if key in self._recent:
            return True
        if window:
            self._recent[key] = now
        return False

    def _create_message(
        self,
        event_type: str,
        data: Dict[str, Any],
        priority: Optional[NotificationPriority],
    ) -> NotificationMessage:
        if priority is None:
            try:
                priority = EVENT_PRIORITIES.get(NotificationEvent(event_type), NotificationPriority.NORMAL)
            except ValueError:
                priority = NotificationPriority.NORMAL

        return NotificationMessage(
            event_type=event_type,
            title=event_type.replace('.', ' ').title(),
            content=self._format_default_content(event_type, data),
            priority=priority,
            metadata=data
        )

    def _format_default_content(self, event_type: str, data: Dict[str, Any]) -> str:
        """Format default content for an event"""
        title = data.get('title', 'unknown item')

        if event_type == NotificationEvent.QUEUE_ADDED:
            return f"{title} is leaving soon (scheduled for {data.get('action_at', 'unknown date')})"
        elif event_type == NotificationEvent.MEDIA_DELETED:
            return f"Deleted {title}"
        elif event_type == NotificationEvent.RULE_COMPLETED:
            mode = " (dry run)" if data.get('dry_run') else ""
            return (
                f"Rule {data.get('rule', 'unknown')} finished{mode}: "
                f"{data.get('matches', 0)} matches, {data.get('queued', 0)} queued, "
                f"{data.get('deleted', 0)} deleted, {data.get('errors', 0)} errors"
            )
        elif event_type == NotificationEvent.ERROR:
            return f"{data.get('action', 'Action')} failed for {title}: {data.get('error', 'Unknown error')}"
        elif event_type == NotificationEvent.SERVICE_DOWN:
            return f"{data.get('service', 'A service')} is unavailable: {data.get('error', 'Unknown error')}"
        elif event_type == NotificationEvent.VIPER_CLEANUP:
            if data.get('dry_run'):
                return f"VIPER dry run: {data.get('would_delete', 0)} episodes would be deleted"
            return f"VIPER cleanup deleted {data.get('deleted', 0)} episodes ({data.get('errors', 0)} errors)"
        elif event_type == NotificationEvent.VELOCITY_CHANGED:
            return (
                f"{data.get('viewer_id', 'A viewer')} changed pace on {data.get('show_id', 'a show')}: "
                f"{data.get('change_percent', 0):+}% ({data.get('episodes_per_day', 0):.2f} episodes/day)"
            )
        elif event_type == NotificationEvent.REDOWNLOAD_TRIGGERED:
            return (
                f"Re-downloading S{data.get('season', 0):02d}E{data.get('episode', 0):02d} of "
                f"{data.get('show_id', 'a show')} ({data.get('urgency', 'normal')}), needed by "
                f"{data.get('viewer_id', 'a viewer')}"
            )

        return f"Event: {event_type}"
