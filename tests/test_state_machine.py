"""Tests for the Menu State Machine — menu transitions, capture and terminal states."""
from datetime import datetime, timedelta, timezone

import pytest

from context.state_machine import MenuStateMachine
from core.errors import InvalidTransition
from models.schemas import (
    ActionType, AutomationSettings, FallbackReason, InboundKind, Menu, MenuAction,
    MenuOption, MenuType, SessionStatus, TurnOutcome, UnknownInputBehavior,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def machine():
    return MenuStateMachine(max_unresolved_attempts=3, history_turns=4)


@pytest.fixture
def started(machine, hours_automation, make_event):
    return machine.start(hours_automation, "main", make_event("hours"), NOW).session


class TestStart:
    def test_creates_session_at_menu(self, machine, hours_automation, make_event):
        result = machine.start(hours_automation, "main", make_event("hours", event_id="e1"), NOW)
        assert result.outcome == TurnOutcome.STARTED
        assert result.menu.id == "main"
        session = result.session
        assert session.current_menu_id == "main"
        assert session.automation_id == "auto_hours"
        assert session.last_event_id == "e1"
        assert session.version == 0
        assert session.expires_at == NOW + timedelta(minutes=30)

    def test_unknown_start_menu_falls_back(self, machine, hours_automation, make_event):
        result = machine.start(hours_automation, "missing", make_event("x"), NOW)
        assert result.outcome == TurnOutcome.FALLBACK
        assert result.fallback_reason == FallbackReason.INVALID_TRANSITION


class TestAdvance:
    def test_show_menu(self, machine, hours_automation, started, make_event):
        event = make_event("opt_more", kind=InboundKind.BUTTON_CLICK)
        result = machine.advance(started, hours_automation, event, NOW)
        assert result.outcome == TurnOutcome.ADVANCED
        assert result.menu.id == "details"
        assert result.session.current_menu_id == "details"
        # input is never mutated
        assert started.current_menu_id == "main"

    def test_send_message_stays_on_menu(self, machine, hours_automation, started, make_event):
        result = machine.advance(started, hours_automation, make_event("opt_hours"), NOW)
        assert result.outcome == TurnOutcome.ADVANCED
        assert result.menu is None
        assert result.action.message == "We are open 9-5"
        assert result.session.current_menu_id == "main"
        assert not result.is_terminal

    def test_send_message_then_end_completes(self, machine, hours_automation, started, make_event):
        details = machine.advance(started, hours_automation, make_event("opt_more"), NOW).session
        result = machine.advance(details, hours_automation, make_event("d_loc"), NOW)
        assert result.outcome == TurnOutcome.COMPLETED
        assert result.session.status == SessionStatus.COMPLETED
        assert result.action.message == "123 Main St"

    def test_end_action(self, machine, hours_automation, started, make_event):
        details = machine.advance(started, hours_automation, make_event("opt_more"), NOW).session
        result = machine.advance(details, hours_automation, make_event("d_done"), NOW)
        assert result.outcome == TurnOutcome.COMPLETED
        assert result.is_terminal

    def test_fallback_ai_action(self, machine, hours_automation, started, make_event):
        result = machine.advance(started, hours_automation, make_event("opt_agent"), NOW)
        assert result.outcome == TurnOutcome.FALLBACK
        assert result.fallback_reason == FallbackReason.AI_REQUESTED
        assert result.action.assistant_id == "asst_1"
        assert result.session.status == SessionStatus.FALLBACK

    def test_option_titles_do_not_resolve_on_button_menus(self, machine, hours_automation, started, make_event):
        result = machine.advance(started, hours_automation, make_event("More"), NOW)
        assert result.outcome == TurnOutcome.REPEATED

    def test_unknown_input_repeats_then_falls_back(self, machine, hours_automation, started, make_event):
        session = started
        for attempt in (1, 2):
            result = machine.advance(session, hours_automation, make_event("???"), NOW)
            assert result.outcome == TurnOutcome.REPEATED
            assert result.menu.id == "main"
            assert result.session.unresolved_attempts == attempt
            session = result.session
        result = machine.advance(session, hours_automation, make_event("???"), NOW)
        assert result.outcome == TurnOutcome.FALLBACK
        assert result.fallback_reason == FallbackReason.MAX_ATTEMPTS

    def test_resolved_input_resets_attempts(self, machine, hours_automation, started, make_event):
        session = machine.advance(started, hours_automation, make_event("???"), NOW).session
        assert session.unresolved_attempts == 1
        session = machine.advance(session, hours_automation, make_event("opt_hours"), NOW).session
        assert session.unresolved_attempts == 0

    def test_per_automation_attempt_cap(self, build_automation, machine, make_event):
        automation = build_automation(settings=AutomationSettings(max_unresolved_attempts=1))
        session = machine.start(automation, "main", make_event("hours"), NOW).session
        result = machine.advance(session, automation, make_event("???"), NOW)
        assert result.outcome == TurnOutcome.FALLBACK

    def test_unknown_input_fallback_policy(self, build_automation, machine, make_event):
        automation = build_automation(
            settings=AutomationSettings(unknown_input_behavior=UnknownInputBehavior.FALLBACK_AI),
        )
        session = machine.start(automation, "main", make_event("hours"), NOW).session
        result = machine.advance(session, automation, make_event("???"), NOW)
        assert result.outcome == TurnOutcome.FALLBACK
        assert result.fallback_reason == FallbackReason.UNKNOWN_INPUT

    def test_free_text_capture(self, machine, hours_automation, make_event):
        session = machine.start(hours_automation, "ask_name", make_event("register"), NOW).session
        result = machine.advance(session, hours_automation, make_event("Asha"), NOW)
        assert result.outcome == TurnOutcome.ADVANCED
        assert result.session.variables == {"name": "Asha"}
        assert result.menu.id == "main"

    def test_free_text_without_next_action_ends(self, build_automation, machine, make_event):
        automation = build_automation(menus=[
            Menu(id="note", name="Note", message_type=MenuType.TEXT, body="Leave a note"),
        ])
        session = machine.start(automation, "note", make_event("x"), NOW).session
        result = machine.advance(session, automation, make_event("my note"), NOW)
        assert result.outcome == TurnOutcome.COMPLETED
        assert result.session.variables == {"note": "my note"}

    def test_text_menu_accepts_number_and_title(self, build_automation, machine, make_event):
        automation = build_automation(menus=[
            Menu(id="pick", name="Pick", message_type=MenuType.TEXT, body="Choose", options=[
                MenuOption(id="a", title="Apples", action=MenuAction(type=ActionType.END)),
                MenuOption(id="b", title="Bananas", action=MenuAction(type=ActionType.END, message="ok")),
            ]),
        ])
        session = machine.start(automation, "pick", make_event("x"), NOW).session
        assert machine.advance(session, automation, make_event("2"), NOW).action.message == "ok"
        assert machine.advance(session, automation, make_event("  bananas "), NOW).action.message == "ok"
        assert machine.advance(session, automation, make_event("3"), NOW).outcome == TurnOutcome.REPEATED

    def test_missing_automation_falls_back(self, machine, started, make_event):
        result = machine.advance(started, None, make_event("opt_hours"), NOW)
        assert result.outcome == TurnOutcome.FALLBACK
        assert result.fallback_reason == FallbackReason.AUTOMATION_UNAVAILABLE

    def test_inactive_automation_falls_back(self, build_automation, machine, started, make_event):
        inactive = build_automation(is_active=False)
        result = machine.advance(started, inactive, make_event("opt_hours"), NOW)
        assert result.fallback_reason == FallbackReason.AUTOMATION_UNAVAILABLE

    def test_current_menu_removed_falls_back(self, build_automation, machine, started, make_event):
        edited = build_automation()
        edited.menus = [m for m in edited.menus if m.id != "main"]
        result = machine.advance(started, edited, make_event("opt_hours"), NOW)
        assert result.fallback_reason == FallbackReason.INVALID_TRANSITION

    def test_show_menu_to_unknown_target_falls_back(self, machine, hours_automation, started, make_event):
        hours_automation.menus[0].options[1].action.target_menu_id = "gone"
        result = machine.advance(started, hours_automation, make_event("opt_more"), NOW)
        assert result.outcome == TurnOutcome.FALLBACK
        assert result.fallback_reason == FallbackReason.INVALID_TRANSITION
        assert result.session.current_menu_id == "main"

    def test_menu_lookup_raises_invalid_transition(self, machine, hours_automation):
        with pytest.raises(InvalidTransition) as exc:
            machine._require_menu(hours_automation, "gone")
        assert exc.value.automation_id == "auto_hours"
        assert exc.value.menu_id == "gone"
        assert machine._require_menu(hours_automation, "details").id == "details"

    def test_expiry_slides_on_each_turn(self, machine, hours_automation, started, make_event):
        later = NOW + timedelta(minutes=10)
        result = machine.advance(started, hours_automation, make_event("opt_hours"), later)
        assert result.session.expires_at == later + timedelta(minutes=30)

    def test_history_is_bounded(self, machine, hours_automation, started, make_event):
        session = started
        for _ in range(6):
            session = machine.advance(session, hours_automation, make_event("opt_hours"), NOW).session
        assert len(session.history) == 4
        assert all(turn.direction == "inbound" for turn in session.history)
