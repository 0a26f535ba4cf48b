"""
Messenger / Instagram Adapters — Meta Send API and page webhooks.

Both surfaces share one webhook shape (entry[].messaging[]) and one Send
API; menus travel as quick replies since neither shows lists.

    Inbound   message.text           → text
              message.quick_reply    → button_click (payload = option id)
              postback               → button_click
              message.attachments    → media (payload = attachment url)
    Outbound  text / quick replies / attachment
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

import httpx

from channels.base import ChannelAdapter, ChannelError, verify_meta_signature
from models.schemas import (
    ButtonsMessage, ChannelType, InboundEvent, InboundKind, ListMessage,
    MediaMessage, OutboundMessage, TextMessage,
)

logger = structlog.get_logger()

GRAPH_URL = "https://graph.facebook.com"

# Send API attachment types
_ATTACHMENT_TYPES = {"image": "image", "video": "video", "document": "file"}


class MessengerAdapter(ChannelAdapter):

    channel_type = ChannelType.MESSENGER

    def __init__(self):
        super().__init__()
        self._page_access_token: str = ""
        self._api_version: str = "v18.0"
        self._verify_token: str = ""
        self._client: Optional[httpx.AsyncClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._page_access_token = config.get("page_access_token", "")
        self._api_version = config.get("api_version", "v18.0")
        self._verify_token = config.get("verify_token", "")

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        if params.get("hub.mode") == "subscribe" and self._verify_token \
                and params.get("hub.verify_token") == self._verify_token:
            return params.get("hub.challenge", "")
        return None

    def verify_signature(self, body: bytes, signature: str) -> bool:
        return verify_meta_signature(self._config.get("app_secret", ""), body, signature)

    # ── Outbound payloads ─────────────────────────────────────

    def to_payload(self, address: str, message: OutboundMessage) -> dict[str, Any]:
        if isinstance(message, TextMessage):
            body: dict[str, Any] = {"text": message.text}
        elif isinstance(message, ButtonsMessage):
            body = {
                "text": message.body,
                "quick_replies": [
                    {"content_type": "text", "title": b.title, "payload": b.id}
                    for b in message.buttons
                ],
            }
        elif isinstance(message, ListMessage):
            # never produced for this channel by the renderer; degrade to quick replies
            rows = [row for section in message.sections for row in section.rows]
            body = {
                "text": message.body,
                "quick_replies": [
                    {"content_type": "text", "title": r.title, "payload": r.id} for r in rows
                ],
            }
        elif isinstance(message, MediaMessage):
            body = {"attachment": {
                "type": _ATTACHMENT_TYPES[message.media_type],
                "payload": {"url": message.url, "is_reusable": True},
            }}
        else:
            raise ChannelError(f"Unsupported message type: {message.type}", self.channel_type.value)

        return {"recipient": {"id": address}, "messaging_type": "RESPONSE", "message": body}

    # ── Send ──────────────────────────────────────────────────

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{GRAPH_URL}/{self._api_version}",
                params={"access_token": self._page_access_token},
                timeout=30.0,
            )
        return self._client

    async def _do_send(self, payload: dict[str, Any], channel_id: Optional[str]) -> dict[str, Any]:
        if not self._page_access_token:
            msg_id = f"m_{uuid.uuid4().hex[:20]}"
            logger.info("meta_mock_sent",
                        channel=self.channel_type.value,
                        to=payload["recipient"]["id"],
                        msg_id=msg_id)
            return {"status": "mock_sent", "channel_message_id": msg_id}

        client = await self._get_client()
        response = await client.post("/me/messages", json=payload)
        response.raise_for_status()
        return {"status": "sent", "channel_message_id": response.json().get("message_id", "")}

    # ── Inbound parsing ───────────────────────────────────────

    def parse_inbound(self, raw_payload: dict[str, Any], organization_id: str) -> list[InboundEvent]:
        events: list[InboundEvent] = []
        for entry in raw_payload.get("entry", []) or []:
            page_id = entry.get("id")
            for item in entry.get("messaging", []) or []:
                event = self._parse_messaging(item, organization_id, page_id)
                if event is not None:
                    events.append(event)
        return events

    def _parse_messaging(self, item: dict[str, Any], organization_id: str,
                         page_id: Optional[str]) -> Optional[InboundEvent]:
        sender = (item.get("sender") or {}).get("id", "")
        if not sender or sender == page_id:
            return None

        message = item.get("message") or {}
        if message.get("is_echo"):
            return None

        postback = item.get("postback")
        if postback:
            kind, payload, mid = InboundKind.BUTTON_CLICK, postback.get("payload", ""), postback.get("mid")
        elif message.get("quick_reply"):
            kind, payload, mid = InboundKind.BUTTON_CLICK, message["quick_reply"].get("payload", ""), message.get("mid")
        elif message.get("text") is not None:
            kind, payload, mid = InboundKind.TEXT, self._sanitize(message["text"]), message.get("mid")
        elif message.get("attachments"):
            attachment = message["attachments"][0]
            url = (attachment.get("payload") or {}).get("url", "")
            kind, payload, mid = InboundKind.MEDIA, url, message.get("mid")
        else:
            return None

        return InboundEvent(
            organization_id=organization_id,
            channel=self.channel_type,
            customer_address=sender,
            kind=kind,
            payload=payload,
            channel_id=page_id,
            event_id=mid or None,
        )

    async def shutdown(self) -> None:
        if self._client:
            await self._client.aclose()


class InstagramAdapter(MessengerAdapter):
    channel_type = ChannelType.INSTAGRAM
