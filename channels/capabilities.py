"""
Channel capability descriptors — what each messaging surface can display.

The renderer only ever consults these; it never branches on the channel name.
"""
from __future__ import annotations

from dataclasses import dataclass

from models.schemas import ChannelType, HeaderType

_ALL_HEADERS = frozenset(HeaderType)


@dataclass(frozen=True)
class ChannelCapabilities:
    channel: ChannelType
    max_buttons: int
    supports_lists: bool
    max_list_rows: int
    button_title_max: int
    row_title_max: int
    row_description_max: int
    section_title_max: int
    body_max: int
    footer_max: int
    header_text_max: int
    button_header_types: frozenset = frozenset()
    list_header_types: frozenset = frozenset()
    supports_media: bool = True


WHATSAPP = ChannelCapabilities(
    channel=ChannelType.WHATSAPP,
    max_buttons=3,
    supports_lists=True,
    max_list_rows=10,
    button_title_max=20,
    row_title_max=24,
    row_description_max=72,
    section_title_max=24,
    body_max=1024,
    footer_max=60,
    header_text_max=60,
    button_header_types=_ALL_HEADERS,
    list_header_types=frozenset({HeaderType.TEXT}),
)

# Messenger and Instagram render buttons as quick replies (13 max, 20 chars).
MESSENGER = ChannelCapabilities(
    channel=ChannelType.MESSENGER,
    max_buttons=13,
    supports_lists=False,
    max_list_rows=0,
    button_title_max=20,
    row_title_max=20,
    row_description_max=0,
    section_title_max=0,
    body_max=2000,
    footer_max=0,
    header_text_max=0,
)

INSTAGRAM = ChannelCapabilities(
    channel=ChannelType.INSTAGRAM,
    max_buttons=13,
    supports_lists=False,
    max_list_rows=0,
    button_title_max=20,
    row_title_max=20,
    row_description_max=0,
    section_title_max=0,
    body_max=1000,
    footer_max=0,
    header_text_max=0,
)

WIDGET = ChannelCapabilities(
    channel=ChannelType.WIDGET,
    max_buttons=10,
    supports_lists=True,
    max_list_rows=50,
    button_title_max=80,
    row_title_max=80,
    row_description_max=200,
    section_title_max=80,
    body_max=4096,
    footer_max=200,
    header_text_max=200,
    button_header_types=_ALL_HEADERS,
    list_header_types=_ALL_HEADERS,
)

CAPABILITIES: dict[ChannelType, ChannelCapabilities] = {
    caps.channel: caps for caps in (WHATSAPP, MESSENGER, INSTAGRAM, WIDGET)
}


def capabilities_for(channel: ChannelType) -> ChannelCapabilities:
    return CAPABILITIES[ChannelType(channel)]
