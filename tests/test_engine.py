"""
End-to-end tests for the automation engine: matching, menu flow, terminal
states, duplicate delivery, concurrent events, expiry and store failures.
"""
import asyncio
from datetime import timedelta

import pytest

from config.settings import EngineConfig
from core.engine import AutomationEngine, summarize_message
from core.errors import StoreTimeout
from database.config_store import CachedConfigStore, InMemoryConfigStore
from database.store_memory import InMemorySessionStore
from models.schemas import (
    ActionType, AutomationSettings, ButtonsMessage, ChannelType, FallbackReason,
    FallbackTarget, InboundKind, ListMessage, Menu, MenuAction, MenuOption,
    SessionKey, TextMessage, TurnOutcome,
)


def key_for(event) -> SessionKey:
    return SessionKey.from_event(event)


class TestMenuFlow:

    @pytest.mark.asyncio
    async def test_keyword_starts_session(self, engine, session_store, make_event):
        event = make_event("what are your opening hours?")
        result = await engine.handle_event(event)

        assert result.outcome == TurnOutcome.STARTED
        assert result.automation_id == "auto_hours"
        assert len(result.messages) == 1
        menu = result.messages[0]
        assert isinstance(menu, ButtonsMessage)
        assert [b.id for b in menu.buttons] == ["opt_hours", "opt_more", "opt_agent"]
        assert menu.body == "Hi {{name}}, how can we help?"

        stored = await session_store.get(key_for(event))
        assert stored.current_menu_id == "main"
        assert stored.version == 1
        assert result.session.version == 1

    @pytest.mark.asyncio
    async def test_no_trigger_no_session(self, engine, session_store, make_event):
        event = make_event("good morning")
        result = await engine.handle_event(event)
        assert result.outcome == TurnOutcome.NO_MATCH
        assert result.messages == []
        assert await session_store.get(key_for(event)) is None

    @pytest.mark.asyncio
    async def test_full_conversation_to_completion(self, engine, session_store, make_event):
        await engine.handle_event(make_event("hours"))

        more = await engine.handle_event(make_event("opt_more", kind=InboundKind.BUTTON_CLICK))
        assert more.outcome == TurnOutcome.ADVANCED
        assert isinstance(more.messages[0], ListMessage)
        rows = more.messages[0].sections[0].rows
        assert [r.id for r in rows] == ["d_loc", "d_back", "d_done"]
        assert rows[0].description == "Where to find us"
        assert more.session.version == 2

        done = await engine.handle_event(make_event("d_loc", kind=InboundKind.BUTTON_CLICK))
        assert done.outcome == TurnOutcome.COMPLETED
        assert done.messages == [TextMessage(text="123 Main St")]
        assert len(session_store) == 0

    @pytest.mark.asyncio
    async def test_send_message_keeps_menu(self, engine, make_event):
        await engine.handle_event(make_event("hours"))
        result = await engine.handle_event(make_event("opt_hours", kind=InboundKind.BUTTON_CLICK))

        assert result.outcome == TurnOutcome.ADVANCED
        assert result.messages == [TextMessage(text="We are open 9-5")]
        assert result.session.current_menu_id == "main"
        outbound = [t.text for t in result.session.history if t.direction == "outbound"]
        assert outbound[-1] == "We are open 9-5"

    @pytest.mark.asyncio
    async def test_end_with_closing_message(self, engine, session_store, make_event):
        await engine.handle_event(make_event("hours"))
        await engine.handle_event(make_event("opt_more"))
        result = await engine.handle_event(make_event("d_done"))
        assert result.outcome == TurnOutcome.COMPLETED
        assert result.messages == [TextMessage(text="Bye!")]
        assert len(session_store) == 0

    @pytest.mark.asyncio
    async def test_free_text_capture_fills_menu_body(self, engine, make_event):
        ask = await engine.handle_event(make_event("register"))
        assert ask.messages == [TextMessage(text="What is your name?")]

        result = await engine.handle_event(make_event("Asha"))
        assert result.outcome == TurnOutcome.ADVANCED
        assert result.session.variables == {"name": "Asha"}
        assert result.messages[0].body == "Hi Asha, how can we help?"

    @pytest.mark.asyncio
    async def test_sessions_are_per_address_and_channel(self, engine, session_store, make_event):
        await engine.handle_event(make_event("hours", address="111"))
        await engine.handle_event(make_event("hours", address="111", channel=ChannelType.WIDGET))
        await engine.handle_event(make_event("hours", address="222"))
        assert len(session_store) == 3

    @pytest.mark.asyncio
    async def test_widget_renders_within_widget_limits(self, engine, make_event):
        result = await engine.handle_event(make_event("hours", channel=ChannelType.WIDGET))
        assert isinstance(result.messages[0], ButtonsMessage)
        assert result.messages[0].buttons[0].title == "Opening hours"


class TestFallback:

    @pytest.mark.asyncio
    async def test_fallback_ai_option(self, engine, session_store, make_event):
        await engine.handle_event(make_event("hours"))
        result = await engine.handle_event(make_event("opt_agent", kind=InboundKind.BUTTON_CLICK))

        assert result.outcome == TurnOutcome.FALLBACK
        assert result.fallback_triggered
        handoff = result.fallback.handoff
        assert handoff.assistant_id == "asst_1"
        assert handoff.reason == FallbackReason.AI_REQUESTED
        assert [t.text for t in handoff.recent_turns] == [
            "hours", "Hi {{name}}, how can we help?", "opt_agent",
        ]
        assert result.messages == [TextMessage(text=AutomationSettings().fallback_message)]
        assert len(session_store) == 0

    @pytest.mark.asyncio
    async def test_unresolved_inputs_reach_cap(self, engine, make_event):
        await engine.handle_event(make_event("hours"))

        for _ in range(2):
            result = await engine.handle_event(make_event("what?"))
            assert result.outcome == TurnOutcome.REPEATED
            assert isinstance(result.messages[0], ButtonsMessage)

        result = await engine.handle_event(make_event("what?"))
        assert result.outcome == TurnOutcome.FALLBACK
        assert result.fallback.handoff.reason == FallbackReason.MAX_ATTEMPTS

    @pytest.mark.asyncio
    async def test_human_target_raises_escalation(self, session_store, make_event, build_automation):
        automation = build_automation(settings=AutomationSettings(
            fallback_target=FallbackTarget.HUMAN, fallback_message="A person will reply soon",
        ))
        engine = AutomationEngine(session_store, InMemoryConfigStore([automation]), config=EngineConfig())
        await engine.handle_event(make_event("hours"))
        result = await engine.handle_event(make_event("opt_agent"))

        assert result.fallback.handoff is None
        escalation = result.fallback.escalation
        assert escalation.menu_id_at_failure == "main"
        assert escalation.automation_id == "auto_hours"
        assert result.messages == [TextMessage(text="A person will reply soon")]

    @pytest.mark.asyncio
    async def test_render_overflow_falls_back_and_reports(self, session_store, make_event, build_automation):
        options = [
            MenuOption(id=f"o{i}", title=f"Choice {i}", action=MenuAction(type=ActionType.END))
            for i in range(11)
        ]
        automation = build_automation(menus=[Menu(id="main", name="Main", body="Pick", options=options)])
        engine = AutomationEngine(session_store, InMemoryConfigStore([automation]), config=EngineConfig())

        result = await engine.handle_event(make_event("hours"))

        assert result.outcome == TurnOutcome.FALLBACK
        assert result.fallback.handoff.reason == FallbackReason.RENDER_OVERFLOW
        assert len(result.config_errors) == 1
        assert "main" in result.config_errors[0]
        assert len(session_store) == 0

    @pytest.mark.asyncio
    async def test_same_menu_renders_on_wider_channel(self, session_store, make_event, build_automation):
        options = [
            MenuOption(id=f"o{i}", title=f"Choice {i}", action=MenuAction(type=ActionType.END))
            for i in range(11)
        ]
        automation = build_automation(menus=[Menu(id="main", name="Main", body="Pick", options=options)])
        engine = AutomationEngine(session_store, InMemoryConfigStore([automation]), config=EngineConfig())

        result = await engine.handle_event(make_event("hours", channel=ChannelType.WIDGET))
        assert result.outcome == TurnOutcome.STARTED
        assert isinstance(result.messages[0], ListMessage)

    @pytest.mark.asyncio
    async def test_deactivated_automation_ends_live_session(self, engine, config_store, make_event):
        await engine.handle_event(make_event("hours"))
        await config_store.set_active("auto_hours", False)

        result = await engine.handle_event(make_event("opt_hours"))
        assert result.outcome == TurnOutcome.FALLBACK
        assert result.fallback.handoff.reason == FallbackReason.AUTOMATION_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_deleted_automation_ends_live_session(self, engine, config_store, make_event):
        await engine.handle_event(make_event("hours"))
        await config_store.delete("auto_hours")

        result = await engine.handle_event(make_event("opt_hours"))
        assert result.outcome == TurnOutcome.FALLBACK
        assert result.fallback.handoff.reason == FallbackReason.AUTOMATION_UNAVAILABLE


class TestFirstContact:

    @pytest.fixture
    def welcome_engine(self, session_store, build_automation):
        automation = build_automation(
            triggers=[],
            settings=AutomationSettings(welcome_enabled=True, welcome_menu_id="main"),
        )
        return AutomationEngine(session_store, InMemoryConfigStore([automation]), config=EngineConfig())

    @pytest.mark.asyncio
    async def test_welcome_only_on_first_contact(self, welcome_engine, make_event):
        first = await welcome_engine.handle_event(make_event("hello"))
        assert first.outcome == TurnOutcome.STARTED

        await welcome_engine.handle_event(make_event("opt_more"))
        await welcome_engine.handle_event(make_event("d_done"))

        again = await welcome_engine.handle_event(make_event("hello"))
        assert again.outcome == TurnOutcome.NO_MATCH

    @pytest.mark.asyncio
    async def test_explicit_first_contact_flag_wins(self, welcome_engine, session_store, make_event):
        await session_store.remember_contact(SessionKey("org_1", ChannelType.WHATSAPP, "15550001"))

        assert (await welcome_engine.handle_event(make_event("hi"))).outcome == TurnOutcome.NO_MATCH
        flagged = await welcome_engine.handle_event(make_event("hi", is_first_contact=True))
        assert flagged.outcome == TurnOutcome.STARTED

        other = make_event("hi", address="999", is_first_contact=False)
        assert (await welcome_engine.handle_event(other)).outcome == TurnOutcome.NO_MATCH


class TestDeliverySemantics:

    @pytest.mark.asyncio
    async def test_duplicate_event_is_ignored(self, engine, session_store, make_event):
        await engine.handle_event(make_event("hours"))
        click = make_event("opt_more", event_id="wamid.1")
        first = await engine.handle_event(click)
        replay = await engine.handle_event(click)

        assert first.outcome == TurnOutcome.ADVANCED
        assert replay.outcome == TurnOutcome.DUPLICATE
        assert replay.messages == []
        stored = await session_store.get(key_for(click))
        assert stored.version == 2
        assert stored.current_menu_id == "details"

    @pytest.mark.asyncio
    async def test_concurrent_events_are_serialized(self, engine, session_store, make_event):
        await engine.handle_event(make_event("hours"))

        results = await asyncio.gather(
            engine.handle_event(make_event("first?")),
            engine.handle_event(make_event("second?")),
        )

        assert [r.outcome for r in results] == [TurnOutcome.REPEATED, TurnOutcome.REPEATED]
        stored = await session_store.get(key_for(make_event("x")))
        assert stored.version == 3
        assert stored.unresolved_attempts == 2

    @pytest.mark.asyncio
    async def test_conflicts_past_retry_budget_drop_the_event(self, config_store, make_event):
        class AlwaysLosing(InMemorySessionStore):
            def __init__(self):
                super().__init__()
                self.attempts = 0

            async def compare_and_swap(self, key, expected_version, new_session):
                self.attempts += 1
                return False

        store = AlwaysLosing()
        engine = AutomationEngine(store, config_store, config=EngineConfig(cas_retries=2))

        result = await engine.handle_event(make_event("hours"))
        assert result.outcome == TurnOutcome.DROPPED
        assert result.messages == []
        assert store.attempts == 3

    @pytest.mark.asyncio
    async def test_contact_ledger_consulted_once_across_retries(self, config_store, make_event):
        class CountingStore(InMemorySessionStore):
            def __init__(self):
                super().__init__()
                self.contacts = 0
                self.lose_next = True

            async def remember_contact(self, key, event_id=None):
                self.contacts += 1
                return await super().remember_contact(key, event_id)

            async def compare_and_swap(self, key, expected_version, new_session):
                if self.lose_next:
                    self.lose_next = False
                    return False
                return await super().compare_and_swap(key, expected_version, new_session)

        store = CountingStore()
        engine = AutomationEngine(store, config_store, config=EngineConfig())
        result = await engine.handle_event(make_event("hours"))
        assert result.outcome == TurnOutcome.STARTED
        assert store.contacts == 1

    @pytest.mark.asyncio
    async def test_expired_session_counts_as_absent(self, engine, session_store, make_event):
        event = make_event("hours")
        started = await engine.handle_event(event)
        await session_store.put(key_for(event), started.session, ttl=timedelta(seconds=-1))

        after = await engine.handle_event(make_event("opt_more", kind=InboundKind.BUTTON_CLICK))
        assert after.outcome == TurnOutcome.NO_MATCH

        restarted = await engine.handle_event(make_event("hours"))
        assert restarted.outcome == TurnOutcome.STARTED
        assert restarted.session.version == 1

    @pytest.mark.asyncio
    async def test_store_timeout_surfaces(self, config_store, make_event):
        class SlowStore(InMemorySessionStore):
            async def get(self, key):
                await asyncio.sleep(1)
                return None

        engine = AutomationEngine(SlowStore(), config_store,
                                  config=EngineConfig(store_timeout_s=0.01))
        with pytest.raises(StoreTimeout) as exc:
            await engine.handle_event(make_event("hours"))
        assert exc.value.operation == "get"
        assert exc.value.retryable


class StallingCas(InMemorySessionStore):
    """The first compare-and-swap takes `delay` seconds, then succeeds or loses."""

    def __init__(self, delay: float, first_wins: bool):
        super().__init__()
        self.delay = delay
        self.first_wins = first_wins
        self.stalled = False

    async def compare_and_swap(self, key, expected_version, new_session):
        if not self.stalled:
            self.stalled = True
            await asyncio.sleep(self.delay)
            if not self.first_wins:
                return False
        return await super().compare_and_swap(key, expected_version, new_session)


class TestRetryAfterTimeout:

    @pytest.mark.asyncio
    async def test_retry_keeps_first_contact(self, build_automation, make_event):
        automation = build_automation(
            triggers=[],
            settings=AutomationSettings(welcome_enabled=True, welcome_menu_id="main"),
        )
        store = StallingCas(delay=0.2, first_wins=False)
        engine = AutomationEngine(store, InMemoryConfigStore([automation]),
                                  config=EngineConfig(store_timeout_s=0.05))
        event = make_event("hello", event_id="wamid.9")

        with pytest.raises(StoreTimeout):
            await engine.handle_event(event)
        await asyncio.sleep(0.25)
        assert await store.get(key_for(event)) is None

        retried = await engine.handle_event(event)
        assert retried.outcome == TurnOutcome.STARTED
        assert isinstance(retried.messages[0], ButtonsMessage)

    @pytest.mark.asyncio
    async def test_write_landing_after_timeout_is_redelivered(self, config_store, make_event):
        store = StallingCas(delay=0.2, first_wins=True)
        engine = AutomationEngine(store, config_store, config=EngineConfig(store_timeout_s=0.05))
        event = make_event("hours", event_id="wamid.1")

        with pytest.raises(StoreTimeout):
            await engine.handle_event(event)
        await asyncio.sleep(0.25)
        assert (await store.get(key_for(event))).last_event_id == "wamid.1"

        retried = await engine.handle_event(event)
        assert retried.outcome == TurnOutcome.STARTED
        assert [b.id for b in retried.messages[0].buttons] == ["opt_hours", "opt_more", "opt_agent"]
        assert retried.session.version == 1

        replayed = await engine.handle_event(event)
        assert replayed.outcome == TurnOutcome.DUPLICATE
        assert replayed.messages == []


class HangingConfigGet(InMemoryConfigStore):
    def __init__(self, automations):
        super().__init__(automations)
        self.hanging = False

    async def get(self, automation_id):
        if self.hanging:
            await asyncio.sleep(1)
        return await super().get(automation_id)


class TestConfigCacheThroughEngine:

    @pytest.mark.asyncio
    async def test_hanging_config_store_does_not_block_live_session(self, hours_automation, make_event):
        now = [1000.0]
        backend = HangingConfigGet([hours_automation])
        configs = CachedConfigStore(backend, refresh_interval_s=30, timeout_s=0.1, clock=lambda: now[0])
        engine = AutomationEngine(InMemorySessionStore(), configs,
                                  config=EngineConfig(store_timeout_s=0.1))

        assert (await engine.handle_event(make_event("hours"))).outcome == TurnOutcome.STARTED
        backend.hanging = True

        fresh = await engine.handle_event(make_event("opt_more", kind=InboundKind.BUTTON_CLICK))
        assert fresh.outcome == TurnOutcome.ADVANCED
        assert fresh.session.current_menu_id == "details"

        now[0] += 60
        stale = await engine.handle_event(make_event("d_back", kind=InboundKind.BUTTON_CLICK))
        assert stale.outcome == TurnOutcome.ADVANCED
        assert stale.session.current_menu_id == "main"


class TestSummarize:
    def test_picks_first_text_field(self):
        assert summarize_message(TextMessage(text="hi")) == "hi"
        buttons = ButtonsMessage(body="Choose", buttons=[])
        assert summarize_message(buttons) == "Choose"
