"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Webhook verification (hub.verify_token challenge)
- Inbound: text, interactive (button_reply, list_reply), quick-reply
  buttons, media; status updates are ignored
- Outbound: text, interactive button / list messages, media with caption
- Phone number normalization
- Mock delivery when no access token is configured (development, tests)
"""
from __future__ import annotations

import re
import uuid
import structlog
from typing import Any, Optional

import httpx

from channels.base import ChannelAdapter, ChannelError, verify_meta_signature
from models.schemas import (
    ButtonsMessage, ChannelType, HeaderType, InboundEvent, InboundKind,
    ListMessage, MediaMessage, MenuHeader, OutboundMessage, TextMessage,
)

logger = structlog.get_logger()

GRAPH_URL = "https://graph.facebook.com"
_MEDIA_TYPES = ("image", "video", "document", "audio", "sticker")


class WhatsAppAdapter(ChannelAdapter):

    channel_type = ChannelType.WHATSAPP

    def __init__(self):
        super().__init__()
        self._phone_number_id: str = ""
        self._access_token: str = ""
        self._verify_token: str = ""
        self._api_version: str = "v18.0"
        self._client: Optional[httpx.AsyncClient] = None

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._phone_number_id = config.get("phone_number_id", "")
        self._access_token = config.get("access_token", "")
        self._verify_token = config.get("verify_token", "")
        self._api_version = config.get("api_version", "v18.0")

    # ── Phone normalization ───────────────────────────────────

    @staticmethod
    def normalize_phone(phone: str) -> str:
        """Digits only, stripping +, spaces, dashes."""
        return re.sub(r"[^\d]", "", phone)

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """Returns the challenge string on success, None on failure."""
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        if mode == "subscribe" and self._verify_token and token == self._verify_token:
            return params.get("hub.challenge", "")
        return None

    def verify_signature(self, body: bytes, signature: str) -> bool:
        return verify_meta_signature(self._config.get("app_secret", ""), body, signature)

    # ── Outbound payloads ─────────────────────────────────────

    def to_payload(self, address: str, message: OutboundMessage) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": self.normalize_phone(address),
        }

        if isinstance(message, TextMessage):
            payload.update(type="text", text={"body": message.text, "preview_url": False})

        elif isinstance(message, ButtonsMessage):
            interactive: dict[str, Any] = {
                "type": "button",
                "body": {"text": message.body},
                "action": {"buttons": [
                    {"type": "reply", "reply": {"id": b.id, "title": b.title}}
                    for b in message.buttons
                ]},
            }
            self._decorate(interactive, message.header, message.footer)
            payload.update(type="interactive", interactive=interactive)

        elif isinstance(message, ListMessage):
            interactive = {
                "type": "list",
                "body": {"text": message.body},
                "action": {
                    "button": message.button_label,
                    "sections": [
                        {
                            "title": section.title,
                            "rows": [
                                {"id": r.id, "title": r.title,
                                 **({"description": r.description} if r.description else {})}
                                for r in section.rows
                            ],
                        }
                        for section in message.sections
                    ],
                },
            }
            self._decorate(interactive, message.header, message.footer)
            payload.update(type="interactive", interactive=interactive)

        elif isinstance(message, MediaMessage):
            media: dict[str, Any] = {"link": message.url}
            if message.caption:
                media["caption"] = message.caption
            payload.update(type=message.media_type, **{message.media_type: media})

        else:
            raise ChannelError(f"Unsupported message type: {message.type}", "whatsapp")

        return payload

    @staticmethod
    def _decorate(interactive: dict[str, Any], header: Optional[MenuHeader], footer: Optional[str]):
        if header is not None:
            if header.type == HeaderType.TEXT:
                interactive["header"] = {"type": "text", "text": header.content}
            else:
                kind = header.type.value
                interactive["header"] = {"type": kind, kind: {"link": header.content}}
        if footer:
            interactive["footer"] = {"text": footer}

    # ── Send ──────────────────────────────────────────────────

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{GRAPH_URL}/{self._api_version}",
                headers={"Authorization": f"Bearer {self._access_token}"},
                timeout=30.0,
            )
        return self._client

    async def _do_send(self, payload: dict[str, Any], channel_id: Optional[str]) -> dict[str, Any]:
        phone_number_id = channel_id or self._phone_number_id
        if not self._access_token or not phone_number_id:
            msg_id = f"wamid.{uuid.uuid4().hex[:20]}"
            logger.info("whatsapp_mock_sent", to=payload["to"], type=payload["type"], msg_id=msg_id)
            return {"status": "mock_sent", "channel_message_id": msg_id}

        client = await self._get_client()
        response = await client.post(f"/{phone_number_id}/messages", json=payload)
        response.raise_for_status()
        data = response.json()
        msg_id = (data.get("messages") or [{}])[0].get("id", "")
        return {"status": "sent", "channel_message_id": msg_id}

    # ── Inbound parsing ───────────────────────────────────────

    def parse_inbound(self, raw_payload: dict[str, Any], organization_id: str) -> list[InboundEvent]:
        """Parse a Cloud API webhook body. One body may carry several messages."""
        events: list[InboundEvent] = []
        for entry in raw_payload.get("entry", []) or []:
            for change in entry.get("changes", []) or []:
                value = change.get("value", {}) or {}
                phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
                names = {
                    c.get("wa_id", ""): (c.get("profile") or {}).get("name", "")
                    for c in value.get("contacts", []) or []
                }
                for msg in value.get("messages", []) or []:
                    event = self._parse_message(msg, organization_id, phone_number_id, names)
                    if event is not None:
                        events.append(event)
        return events

    def _parse_message(
        self,
        msg: dict[str, Any],
        organization_id: str,
        phone_number_id: Optional[str],
        names: dict[str, str],
    ) -> Optional[InboundEvent]:
        sender = msg.get("from", "")
        if not sender:
            return None
        msg_type = msg.get("type", "text")
        kind = InboundKind.TEXT
        payload = ""

        if msg_type == "text":
            payload = self._sanitize(msg.get("text", {}).get("body", ""))

        elif msg_type == "interactive":
            interactive = msg.get("interactive", {})
            reply = interactive.get(interactive.get("type", ""), {}) or {}
            kind = InboundKind.BUTTON_CLICK
            payload = reply.get("id", "")

        elif msg_type == "button":
            kind = InboundKind.BUTTON_CLICK
            payload = msg.get("button", {}).get("payload", "")

        elif msg_type in _MEDIA_TYPES:
            kind = InboundKind.MEDIA
            payload = msg.get(msg_type, {}).get("id", "")

        else:
            logger.debug("whatsapp_message_type_ignored", type=msg_type)
            return None

        return InboundEvent(
            organization_id=organization_id,
            channel=ChannelType.WHATSAPP,
            customer_address=self.normalize_phone(sender),
            kind=kind,
            payload=payload,
            channel_id=phone_number_id,
            event_id=msg.get("id") or None,
            sender_name=names.get(sender, ""),
        )

    async def shutdown(self) -> None:
        if self._client:
            await self._client.aclose()
