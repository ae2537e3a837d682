"""Provider interface and message types shared by every notification channel"""

import asyncio
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import aiohttp
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class NotificationChannel(str, Enum):
    DISCORD = "discord"
    WEBHOOK = "webhook"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationEvent(str, Enum):
    """Everything the worker reports"""
    # Queue and rules
    QUEUE_ADDED = "queue.added"
    MEDIA_DELETED = "media.deleted"
    RULE_COMPLETED = "rule.completed"
    ERROR = "error"
    SERVICE_DOWN = "service.down"

    # VIPER
    VIPER_CLEANUP = "viper.cleanup"
    VELOCITY_CHANGED = "velocity.changed"
    REDOWNLOAD_TRIGGERED = "redownload.triggered"

    TEST = "test"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SendResult(BaseModel):
    success: bool
    channel: NotificationChannel
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class NotificationMessage(BaseModel):
    """One rendered notification, independent of the channel it goes to"""
    event_type: str
    title: Optional[str] = None
    content: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def get_idempotency_key(self) -> str:
        """Stable hash of event, content and metadata; equal messages share a key"""
        data = f"{self.event_type}:{self.content}:{json.dumps(self.metadata, sort_keys=True, default=str)}"
        return hashlib.sha256(data.encode()).hexdigest()


class BaseProvider(ABC):
    """A notification channel.

    Subclasses validate their own config, shape the outgoing payload and
    decide what counts as delivered; ``_post`` does the HTTP part for all
    of them.
    """

    channel: NotificationChannel
    timeout_seconds = 10

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.enabled = config.get('enabled', False)

    @abstractmethod
    def validate_config(self) -> Tuple[bool, Optional[str]]:
        """Returns (is_valid, error_message)"""

    @abstractmethod
    async def send(self, message: NotificationMessage) -> SendResult:
        pass

    @abstractmethod
    def format_message(self, message: NotificationMessage) -> Dict[str, Any]:
        pass

    def is_enabled(self) -> bool:
        return self.enabled

    def _disabled(self) -> SendResult:
        return SendResult(
            success=False,
            channel=self.channel,
            error=f"{self.channel.value} notifications are disabled",
        )

    async def _post(self, url: str, payload: Dict[str, Any],
                    headers: Optional[Dict[str, str]] = None) -> SendResult:
        """POST a JSON payload; any 2xx answer is a delivery"""
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                ) as response:
                    if 200 <= response.status < 300:
                        return SendResult(success=True, channel=self.channel)
                    body = await response.text()
                    logger.error(f"{self.channel.value} delivery to {url} failed: {response.status} - {body}")
                    return SendResult(
                        success=False,
                        channel=self.channel,
                        error=f"HTTP {response.status}: {body[:100]}",
                    )
        except asyncio.TimeoutError:
            return SendResult(success=False, channel=self.channel, error=f"Timed out posting to {url}")
        except aiohttp.ClientError as e:
            logger.error(f"{self.channel.value} delivery to {url} failed: {e}")
            return SendResult(success=False, channel=self.channel, error=str(e))
