"""Tests for menu rendering under channel capabilities."""
import pytest

from channels.capabilities import INSTAGRAM, MESSENGER, WHATSAPP, WIDGET
from channels.renderer import MessageRenderer
from core.errors import RenderOverflow
from models.schemas import (
    ActionMedia, ActionType, ButtonsMessage, HeaderType, ListMessage, MediaMessage, Menu,
    MenuAction, MenuHeader, MenuOption, MenuType, TextMessage,
)
from utils.text import truncate

_END = MenuAction(type=ActionType.END)


def make_menu(count: int, message_type=MenuType.BUTTONS, title="Option", **kwargs) -> Menu:
    return Menu(
        id="m1",
        name=kwargs.pop("name", "Main menu"),
        message_type=message_type,
        body=kwargs.pop("body", "Choose one"),
        options=[MenuOption(id=f"o{i}", title=f"{title} {i}", action=_END) for i in range(1, count + 1)],
        **kwargs,
    )


@pytest.fixture
def renderer():
    return MessageRenderer()


class TestTruncate:
    def test_short_value_unchanged(self):
        assert truncate("Hello", 20) == "Hello"

    def test_exact_limit_unchanged(self):
        assert truncate("x" * 20, 20) == "x" * 20

    def test_cut_with_ellipsis(self):
        result = truncate("Opening hours and holiday times", 20)
        assert len(result) == 20
        assert result.endswith("…")
        assert result.startswith("Opening hours and h")


class TestButtons:
    def test_fits_as_buttons(self, renderer):
        message = renderer.render(make_menu(3), WHATSAPP)
        assert isinstance(message, ButtonsMessage)
        assert [b.id for b in message.buttons] == ["o1", "o2", "o3"]

    def test_demoted_to_list_when_over_button_cap(self, renderer):
        message = renderer.render(make_menu(4), WHATSAPP)
        assert isinstance(message, ListMessage)
        assert len(message.sections) == 1
        assert message.sections[0].title == "Main menu"
        assert [r.id for r in message.sections[0].rows] == ["o1", "o2", "o3", "o4"]

    def test_overflow_when_too_many_for_list(self, renderer):
        with pytest.raises(RenderOverflow) as exc:
            renderer.render(make_menu(11), WHATSAPP)
        assert exc.value.menu_id == "m1"
        assert exc.value.channel == "whatsapp"

    def test_quick_replies_on_messenger(self, renderer):
        message = renderer.render(make_menu(13), MESSENGER)
        assert isinstance(message, ButtonsMessage)
        assert len(message.buttons) == 13

    def test_overflow_on_messenger_without_lists(self, renderer):
        with pytest.raises(RenderOverflow):
            renderer.render(make_menu(14), INSTAGRAM)

    def test_zero_options_render_as_text(self, renderer):
        message = renderer.render(make_menu(0), WHATSAPP)
        assert message == TextMessage(text="Choose one")

    def test_titles_truncated(self, renderer):
        menu = make_menu(2, title="A very long option title for buttons")
        message = renderer.render(menu, WHATSAPP)
        assert all(len(b.title) <= 20 for b in message.buttons)

    def test_titles_colliding_after_truncation(self, renderer):
        menu = Menu(id="m1", name="M", body="b", options=[
            MenuOption(id="a", title="Appointment booking one", action=_END),
            MenuOption(id="b", title="Appointment booking two", action=_END),
        ])
        with pytest.raises(RenderOverflow):
            renderer.render(menu, WHATSAPP)
        # the wider widget keeps them distinct
        assert isinstance(renderer.render(menu, WIDGET), ButtonsMessage)

    def test_header_and_footer(self, renderer):
        menu = make_menu(2, header=MenuHeader(type=HeaderType.IMAGE, content="https://x/img.png"),
                         footer="Powered by us")
        message = renderer.render(menu, WHATSAPP)
        assert message.header.type == HeaderType.IMAGE
        assert message.footer == "Powered by us"

    def test_unsupported_header_omitted(self, renderer):
        menu = make_menu(2, header=MenuHeader(type=HeaderType.TEXT, content="Hi"), footer="f")
        message = renderer.render(menu, MESSENGER)
        assert message.header is None
        assert message.footer is None


class TestLists:
    def test_list_header_must_be_text_on_whatsapp(self, renderer):
        menu = make_menu(4, header=MenuHeader(type=HeaderType.IMAGE, content="https://x/img.png"))
        message = renderer.render(menu, WHATSAPP)
        assert isinstance(message, ListMessage)
        assert message.header is None

    def test_list_menu(self, renderer):
        message = renderer.render(make_menu(5, MenuType.LIST), WHATSAPP)
        assert isinstance(message, ListMessage)

    def test_list_over_row_limit(self, renderer):
        with pytest.raises(RenderOverflow):
            renderer.render(make_menu(11, MenuType.LIST), WHATSAPP)
        assert isinstance(renderer.render(make_menu(11, MenuType.LIST), WIDGET), ListMessage)

    def test_list_becomes_buttons_without_list_support(self, renderer):
        message = renderer.render(make_menu(3, MenuType.LIST), MESSENGER)
        assert isinstance(message, ButtonsMessage)

    def test_row_description_truncated(self, renderer):
        menu = Menu(id="m1", name="M", message_type=MenuType.LIST, body="b", options=[
            MenuOption(id="a", title="A", description="d" * 100, action=_END),
        ])
        row = renderer.render(menu, WHATSAPP).sections[0].rows[0]
        assert len(row.description) == 72


class TestText:
    def test_numbered_options(self, renderer):
        message = renderer.render(make_menu(2, MenuType.TEXT), WHATSAPP)
        assert message.text == "Choose one\n\n1. Option 1\n2. Option 2"

    def test_body_interpolation(self, renderer):
        menu = make_menu(0, body="Hi {{name}}, your order {{order}} is ready")
        message = renderer.render(menu, WHATSAPP, {"name": "Asha"})
        assert message.text == "Hi Asha, your order {{order}} is ready"

    def test_body_truncated_to_channel_limit(self, renderer):
        message = renderer.render(make_menu(0, body="x" * 1500), INSTAGRAM)
        assert len(message.text) == 1000

    def test_deterministic(self, renderer):
        menu = make_menu(7)
        assert renderer.render(menu, WHATSAPP) == renderer.render(menu, WHATSAPP)


class TestActions:
    def test_message_action(self, renderer):
        action = MenuAction(type=ActionType.SEND_MESSAGE, message="Thanks {{name}}")
        assert renderer.render_action(action, WHATSAPP, {"name": "Ravi"}) == TextMessage(text="Thanks Ravi")

    def test_media_action_uses_message_as_caption(self, renderer):
        action = MenuAction(type=ActionType.SEND_MESSAGE, message="Our menu",
                            media=ActionMedia(type="document", url="https://x/menu.pdf"))
        message = renderer.render_action(action, WHATSAPP)
        assert isinstance(message, MediaMessage)
        assert message.media_type == "document"
        assert message.caption == "Our menu"

    def test_action_without_content(self, renderer):
        assert renderer.render_action(MenuAction(type=ActionType.END), WHATSAPP) is None
