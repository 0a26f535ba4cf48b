"""Shared test fixtures for the chatbot automation engine."""
import pytest
from typing import Optional

from config.settings import EngineConfig, reset_settings
from core.engine import AutomationEngine
from database.config_store import InMemoryConfigStore
from database.store_factory import reset_stores
from database.store_memory import InMemorySessionStore
from models.schemas import (
    ActionType, Automation, AutomationSettings, ChannelType, InboundEvent, InboundKind,
    Menu, MenuAction, MenuOption, MenuType, Trigger, TriggerType,
)


@pytest.fixture(autouse=True)
def _isolated_singletons(monkeypatch):
    monkeypatch.delenv("CHATBOT_CONFIG", raising=False)
    reset_settings()
    reset_stores()
    yield
    reset_settings()
    reset_stores()


def build_hours_automation(**overrides) -> Automation:
    """A small store-information bot exercising every action type."""
    data = dict(
        id="auto_hours",
        organization_id="org_1",
        name="Store info",
        is_active=True,
        priority=1,
        triggers=[
            Trigger(id="t_hours", type=TriggerType.KEYWORD, keywords=["hours", "open"], menu_id="main"),
            Trigger(id="t_name", type=TriggerType.KEYWORD, keywords=["register"], menu_id="ask_name"),
            Trigger(id="t_btn", type=TriggerType.BUTTON_CLICK, payload_ids=["start_menu"], menu_id="main"),
        ],
        menus=[
            Menu(
                id="main",
                name="Main menu",
                message_type=MenuType.BUTTONS,
                body="Hi {{name}}, how can we help?",
                footer="Reply with a button",
                options=[
                    MenuOption(id="opt_hours", title="Opening hours",
                               action=MenuAction(type=ActionType.SEND_MESSAGE, message="We are open 9-5")),
                    MenuOption(id="opt_more", title="More",
                               action=MenuAction(type=ActionType.SHOW_MENU, target_menu_id="details")),
                    MenuOption(id="opt_agent", title="Talk to us",
                               action=MenuAction(type=ActionType.FALLBACK_AI, assistant_id="asst_1")),
                ],
            ),
            Menu(
                id="details",
                name="Details",
                message_type=MenuType.LIST,
                body="Pick a topic",
                options=[
                    MenuOption(id="d_loc", title="Location", description="Where to find us",
                               action=MenuAction(type=ActionType.SEND_MESSAGE, message="123 Main St",
                                                 then_end=True)),
                    MenuOption(id="d_back", title="Back",
                               action=MenuAction(type=ActionType.SHOW_MENU, target_menu_id="main")),
                    MenuOption(id="d_done", title="Done",
                               action=MenuAction(type=ActionType.END, message="Bye!")),
                ],
            ),
            Menu(
                id="ask_name",
                name="Ask name",
                message_type=MenuType.TEXT,
                body="What is your name?",
                variable_name="name",
                next_action=MenuAction(type=ActionType.SHOW_MENU, target_menu_id="main"),
            ),
        ],
        settings=AutomationSettings(session_timeout_minutes=30),
    )
    data.update(overrides)
    return Automation(**data)


@pytest.fixture
def build_automation():
    return build_hours_automation


@pytest.fixture
def hours_automation() -> Automation:
    return build_hours_automation()


@pytest.fixture
def make_event():
    counter = {"n": 0}

    def _make(
        payload: str,
        kind: InboundKind = InboundKind.TEXT,
        address: str = "15550001",
        channel: ChannelType = ChannelType.WHATSAPP,
        event_id: Optional[str] = None,
        organization_id: str = "org_1",
        **extra,
    ) -> InboundEvent:
        counter["n"] += 1
        return InboundEvent(
            organization_id=organization_id,
            channel=channel,
            customer_address=address,
            kind=kind,
            payload=payload,
            event_id=event_id or f"evt_{counter['n']}",
            **extra,
        )

    return _make


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def config_store(hours_automation) -> InMemoryConfigStore:
    return InMemoryConfigStore([hours_automation])


@pytest.fixture
def engine(session_store, config_store) -> AutomationEngine:
    return AutomationEngine(session_store, config_store, config=EngineConfig())
