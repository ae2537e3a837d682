"""Generic JSON webhook notifications"""

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .base import BaseProvider, NotificationChannel, NotificationMessage, SendResult

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'X-Culler-Signature'


class WebhookProvider(BaseProvider):
    """Delivers a signed JSON envelope to each configured endpoint.

    Endpoint config keys: ``url`` (required), ``name``, ``secret`` for an
    HMAC-SHA256 signature header, ``headers`` merged into the request and
    ``events``, an optional list of event types the endpoint wants. The
    send counts as delivered when any endpoint accepts it.
    """

    channel = NotificationChannel.WEBHOOK

    def validate_config(self) -> Tuple[bool, Optional[str]]:
        endpoints = self.config.get('endpoints')
        if not endpoints:
            return False, "At least one webhook endpoint is required"
        for endpoint in endpoints:
            url = endpoint.get('url')
            if not url:
                return False, "Webhook URL is required for each endpoint"
            if not url.startswith(('http://', 'https://')):
                return False, f"Invalid webhook URL: {url}"
        return True, None

    def endpoints_for(self, event_type: str) -> List[Dict[str, Any]]:
        return [
            endpoint for endpoint in self.config.get('endpoints', [])
            if not endpoint.get('events') or event_type in endpoint['events']
        ]

    async def send(self, message: NotificationMessage) -> SendResult:
        if not self.enabled:
            return self._disabled()

        endpoints = self.endpoints_for(message.event_type)
        if not endpoints:
            return SendResult(
                success=False,
                channel=self.channel,
                error=f"No webhook endpoint subscribes to {message.event_type}",
            )

        payload = self.format_message(message)
        first_failure = None
        for endpoint in endpoints:
            result = await self._post(endpoint['url'], payload, self._headers(payload, endpoint))
            if result.success:
                result.provider_message_id = endpoint.get('name', endpoint['url'])
                return result
            first_failure = first_failure or result
        logger.warning(f"No webhook endpoint accepted {message.event_type}")
        return first_failure

    def _headers(self, payload: Dict[str, Any], endpoint: Dict[str, Any]) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json', 'User-Agent': 'Culler/1.0'}
        if endpoint.get('secret'):
            headers[SIGNATURE_HEADER] = self._generate_signature(payload, endpoint['secret'])
        headers.update(endpoint.get('headers') or {})
        return headers

    def format_message(self, message: NotificationMessage) -> Dict[str, Any]:
        return {
            "event": message.event_type,
            "priority": message.priority.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": {
                "title": message.title,
                "content": message.content,
                "metadata": message.metadata,
            },
            "idempotency_key": message.get_idempotency_key(),
        }

    def _generate_signature(self, payload: Dict[str, Any], secret: str) -> str:
        """HMAC-SHA256 over the compact, key-sorted JSON of the payload"""
        body = json.dumps(payload, separators=(',', ':'), sort_keys=True, default=str)
        return hmac.new(secret.encode('utf-8'), body.encode('utf-8'), hashlib.sha256).hexdigest()
