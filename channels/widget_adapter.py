"""
Website Widget Adapter — the embeddable chat widget served by this API.

The widget polls for replies, so delivery is an in-process outbox per
visitor address: send() appends the rendered message as JSON and
GET /widget/{organization_id}/{address}/messages drains it.

Inbound body (POST /webhooks/widget/{organization_id}):
    {"visitor_id": "...", "widget_id": "...", "message_id": "...",
     "text": "hi"}                      # or "button_id": "opt_1"
"""
from __future__ import annotations

import uuid
import structlog
from collections import defaultdict
from typing import Any, Optional

from channels.base import ChannelAdapter
from models.schemas import ChannelType, InboundEvent, InboundKind, OutboundMessage

logger = structlog.get_logger()


class WidgetAdapter(ChannelAdapter):

    channel_type = ChannelType.WIDGET

    def __init__(self, max_pending: int = 100):
        super().__init__()
        self.max_pending = max_pending
        self._outbox: dict[str, list[dict[str, Any]]] = defaultdict(list)

    def to_payload(self, address: str, message: OutboundMessage) -> dict[str, Any]:
        return {"to": address, "message": message.model_dump(mode="json", exclude_none=True)}

    async def _do_send(self, payload: dict[str, Any], channel_id: Optional[str]) -> dict[str, Any]:
        msg_id = uuid.uuid4().hex[:16]
        pending = self._outbox[payload["to"]]
        pending.append({"id": msg_id, **payload["message"]})
        if len(pending) > self.max_pending:
            del pending[: len(pending) - self.max_pending]
        return {"status": "queued", "channel_message_id": msg_id}

    def drain(self, address: str) -> list[dict[str, Any]]:
        """Pop every pending message for a visitor, oldest first."""
        return self._outbox.pop(address, [])

    def parse_inbound(self, raw_payload: dict[str, Any], organization_id: str) -> list[InboundEvent]:
        visitor = raw_payload.get("visitor_id") or raw_payload.get("sender_id") or ""
        if not visitor:
            return []
        if raw_payload.get("button_id"):
            kind, payload = InboundKind.BUTTON_CLICK, str(raw_payload["button_id"])
        elif raw_payload.get("media_url"):
            kind, payload = InboundKind.MEDIA, str(raw_payload["media_url"])
        else:
            kind, payload = InboundKind.TEXT, self._sanitize(str(raw_payload.get("text", "")))

        return [InboundEvent(
            organization_id=organization_id,
            channel=ChannelType.WIDGET,
            customer_address=str(visitor),
            kind=kind,
            payload=payload,
            channel_id=raw_payload.get("widget_id"),
            event_id=raw_payload.get("message_id"),
            sender_name=raw_payload.get("name", ""),
        )]
