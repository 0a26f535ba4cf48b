"""
Message Renderer — turns a Menu into the tightest message a channel can show.

Pure and deterministic: no I/O, no clock, no randomness. Options are never
dropped: a menu that does not fit is demoted (buttons → list, list → buttons)
or rejected with RenderOverflow.

    renderer = MessageRenderer()
    message = renderer.render(menu, capabilities_for(ChannelType.WHATSAPP), variables)
"""
from __future__ import annotations

from typing import Mapping, Optional

from channels.capabilities import ChannelCapabilities
from core.errors import RenderOverflow
from models.schemas import (
    Button, ButtonsMessage, ListMessage, ListRow, ListSection, MediaMessage,
    Menu, MenuAction, MenuHeader, MenuType, OutboundMessage, TextMessage, HeaderType,
)
from utils.text import interpolate, truncate


class MessageRenderer:

    # ── Menus ─────────────────────────────────────────────────

    def render(
        self,
        menu: Menu,
        caps: ChannelCapabilities,
        variables: Optional[Mapping[str, str]] = None,
    ) -> OutboundMessage:
        body = truncate(interpolate(menu.body, variables or {}), caps.body_max)
        count = len(menu.options)

        if menu.message_type == MenuType.TEXT or count == 0:
            return self._text(menu, body)

        if menu.message_type == MenuType.BUTTONS:
            if count <= caps.max_buttons:
                return self._buttons(menu, caps, body)
            if caps.supports_lists and count <= caps.max_list_rows:
                return self._list(menu, caps, body)
            raise RenderOverflow(
                menu.id, caps.channel.value,
                f"{count} buttons exceed the limit of {caps.max_buttons}"
                + ("" if not caps.supports_lists else f" and the list limit of {caps.max_list_rows}"),
            )

        if caps.supports_lists:
            if count <= caps.max_list_rows:
                return self._list(menu, caps, body)
            raise RenderOverflow(
                menu.id, caps.channel.value,
                f"{count} rows exceed the list limit of {caps.max_list_rows}",
            )
        if count <= caps.max_buttons:
            return self._buttons(menu, caps, body)
        raise RenderOverflow(
            menu.id, caps.channel.value,
            f"lists are unsupported and {count} options exceed {caps.max_buttons} buttons",
        )

    def _text(self, menu: Menu, body: str) -> TextMessage:
        if not menu.options:
            return TextMessage(text=body)
        lines = [f"{i}. {option.title}" for i, option in enumerate(menu.options, start=1)]
        return TextMessage(text=body + "\n\n" + "\n".join(lines))

    def _buttons(self, menu: Menu, caps: ChannelCapabilities, body: str) -> ButtonsMessage:
        titles = [truncate(o.title, caps.button_title_max) for o in menu.options]
        self._ensure_distinct(menu, caps, titles)
        return ButtonsMessage(
            body=body,
            buttons=[Button(id=o.id, title=t) for o, t in zip(menu.options, titles)],
            header=self._header(menu.header, caps.button_header_types, caps),
            footer=self._footer(menu.footer, caps),
        )

    def _list(self, menu: Menu, caps: ChannelCapabilities, body: str) -> ListMessage:
        rows = [
            ListRow(
                id=o.id,
                title=truncate(o.title, caps.row_title_max),
                description=truncate(o.description, caps.row_description_max) if o.description else None,
            )
            for o in menu.options
        ]
        self._ensure_distinct(menu, caps, [r.title for r in rows])
        return ListMessage(
            body=body,
            sections=[ListSection(title=truncate(menu.name, caps.section_title_max), rows=rows)],
            header=self._header(menu.header, caps.list_header_types, caps),
            footer=self._footer(menu.footer, caps),
        )

    @staticmethod
    def _ensure_distinct(menu: Menu, caps: ChannelCapabilities, titles: list[str]):
        if len(set(titles)) != len(titles):
            raise RenderOverflow(
                menu.id, caps.channel.value, "option titles are not distinct after truncation",
            )

    @staticmethod
    def _header(header: Optional[MenuHeader], allowed: frozenset,
                caps: ChannelCapabilities) -> Optional[MenuHeader]:
        if header is None or header.type not in allowed:
            return None
        if header.type == HeaderType.TEXT:
            return MenuHeader(type=header.type, content=truncate(header.content, caps.header_text_max))
        return header

    @staticmethod
    def _footer(footer: Optional[str], caps: ChannelCapabilities) -> Optional[str]:
        if not footer or caps.footer_max <= 0:
            return None
        return truncate(footer, caps.footer_max)

    # ── Actions ───────────────────────────────────────────────

    def render_action(
        self,
        action: MenuAction,
        caps: ChannelCapabilities,
        variables: Optional[Mapping[str, str]] = None,
    ) -> Optional[OutboundMessage]:
        """Message carried by a send_message / end action, independent of the menu type."""
        variables = variables or {}
        if action.media is not None:
            caption = action.media.caption or action.message
            return MediaMessage(
                media_type=action.media.type,
                url=action.media.url,
                caption=interpolate(caption, variables) if caption else None,
            )
        if action.message:
            return TextMessage(text=truncate(interpolate(action.message, variables), caps.body_max))
        return None
