"""
Menu State Machine — Resolves one customer input against the current menu.

States are the menu ids of an Automation plus two terminal pseudo-states,
completed and fallback. The machine is pure: it receives a session and
returns an updated copy together with what should be shown next. Persisting
the copy (or deleting the session on a terminal state) is the engine's job.

Flow:
  input
    → free-text menu?  capture into variables, run the menu's next action
    → option id match? run the option's action
    → otherwise        repeat the menu (bounded) or fall back

Actions:
  show_menu     move to the target menu (validated before it is committed)
  send_message  stay on the current menu, emit the message
                (send_message + then_end completes the session)
  fallback_ai   terminal fallback
  end           terminal completed
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional

from core.errors import InvalidTransition
from models.schemas import (
    ActionType, Automation, FallbackReason, InboundEvent, Menu, MenuAction,
    MenuOption, MenuType, Session, SessionKey, SessionStatus, Turn, TurnOutcome,
    UnknownInputBehavior,
)

logger = structlog.get_logger()

_END = MenuAction(type=ActionType.END)


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

class TransitionResult:
    """Outcome of applying one input to a session."""

    def __init__(
        self,
        outcome: TurnOutcome,
        session: Session,
        menu: Optional[Menu] = None,
        action: Optional[MenuAction] = None,
        fallback_reason: Optional[FallbackReason] = None,
    ):
        self.outcome = outcome
        self.session = session              # updated copy, status tells terminal
        self.menu = menu                    # menu to render next, if any
        self.action = action                # send_message / end action carrying a message
        self.fallback_reason = fallback_reason

    @property
    def is_terminal(self) -> bool:
        return self.session.is_terminal

    def __repr__(self):
        target = self.menu.id if self.menu else self.session.status.value
        return f"<Transition {self.outcome.value} → {target}>"


# ──────────────────────────────────────────────────────────────
#  Menu State Machine
# ──────────────────────────────────────────────────────────────

class MenuStateMachine:

    def __init__(self, max_unresolved_attempts: int = 3, history_turns: int = 10):
        self.max_unresolved_attempts = max_unresolved_attempts
        self.history_turns = history_turns

    # ── Session Creation ──────────────────────────────────────

    def start(
        self,
        automation: Automation,
        menu_id: str,
        event: InboundEvent,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Create the first state of a conversation at a trigger's target menu."""
        now = now or datetime.now(timezone.utc)
        key = SessionKey.from_event(event)
        session = Session(
            automation_id=automation.id,
            organization_id=key.organization_id,
            channel=key.channel,
            customer_address=key.customer_address,
            current_menu_id=menu_id,
            last_event_id=event.event_id,
            created_at=now,
            updated_at=now,
            expires_at=self._expiry(automation, now),
        )
        self._record(session, "inbound", event.payload, menu_id, now)

        try:
            menu = self._require_menu(automation, menu_id)
        except InvalidTransition as e:
            return self._invalid_transition(session, e, now)

        logger.info("session_started",
                    automation_id=automation.id,
                    session_id=session.id,
                    menu_id=menu_id)
        return TransitionResult(TurnOutcome.STARTED, session, menu=menu)

    # ── Input Application ─────────────────────────────────────

    def advance(
        self,
        session: Session,
        automation: Optional[Automation],
        event: InboundEvent,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        now = now or datetime.now(timezone.utc)
        updated = session.model_copy(deep=True)
        updated.last_event_id = event.event_id
        updated.updated_at = now
        self._record(updated, "inbound", event.payload, session.current_menu_id, now)

        if automation is None or not automation.is_active:
            logger.warning("session_automation_unavailable",
                           session_id=session.id,
                           automation_id=session.automation_id)
            return self._fallback(updated, FallbackReason.AUTOMATION_UNAVAILABLE, now)

        try:
            menu = self._require_menu(automation, session.current_menu_id)

            if menu.is_free_text:
                updated.variables[menu.variable_key] = event.payload
                updated.unresolved_attempts = 0
                return self._dispatch(updated, automation, menu.next_action or _END, now)

            option = self.resolve_option(menu, event.payload)
            if option is None:
                return self._unknown_input(updated, automation, menu, now)

            updated.unresolved_attempts = 0
            return self._dispatch(updated, automation, option.action, now)
        except InvalidTransition as e:
            return self._invalid_transition(updated, e, now)

    @staticmethod
    def resolve_option(menu: Menu, raw_input: str) -> Optional[MenuOption]:
        """
        Option ids always resolve. Plain text menus also accept the option's
        number in the rendered list or its title.
        """
        raw_input = (raw_input or "").strip()
        option = menu.get_option(raw_input)
        if option is not None or menu.message_type != MenuType.TEXT:
            return option
        if raw_input.isdigit():
            index = int(raw_input) - 1
            if 0 <= index < len(menu.options):
                return menu.options[index]
        folded = raw_input.casefold()
        return next((o for o in menu.options if o.title.strip().casefold() == folded), None)

    # ── Dispatch ──────────────────────────────────────────────

    def _dispatch(
        self,
        session: Session,
        automation: Automation,
        action: MenuAction,
        now: datetime,
    ) -> TransitionResult:
        if action.type == ActionType.SHOW_MENU:
            target = self._require_menu(automation, action.target_menu_id)
            from_menu = session.current_menu_id
            session.current_menu_id = target.id
            session.expires_at = self._expiry(automation, now)
            logger.info("menu_transition",
                        session_id=session.id,
                        transition=f"{from_menu} → {target.id}")
            return TransitionResult(TurnOutcome.ADVANCED, session, menu=target)

        if action.type == ActionType.SEND_MESSAGE:
            if action.then_end:
                return self._complete(session, now, action)
            session.expires_at = self._expiry(automation, now)
            return TransitionResult(TurnOutcome.ADVANCED, session, action=action)

        if action.type == ActionType.FALLBACK_AI:
            return self._fallback(session, FallbackReason.AI_REQUESTED, now, action)

        if action.type == ActionType.END:
            return self._complete(session, now, action)

        raise ValueError(f"Unhandled action type: {action.type}")

    def _unknown_input(
        self,
        session: Session,
        automation: Automation,
        menu: Menu,
        now: datetime,
    ) -> TransitionResult:
        settings = automation.settings
        if settings.unknown_input_behavior == UnknownInputBehavior.FALLBACK_AI:
            return self._fallback(session, FallbackReason.UNKNOWN_INPUT, now)

        cap = settings.max_unresolved_attempts or self.max_unresolved_attempts
        session.unresolved_attempts += 1
        if session.unresolved_attempts >= cap:
            logger.info("unresolved_attempts_exhausted",
                        session_id=session.id,
                        menu_id=menu.id,
                        attempts=session.unresolved_attempts)
            return self._fallback(session, FallbackReason.MAX_ATTEMPTS, now)

        session.expires_at = self._expiry(automation, now)
        return TransitionResult(TurnOutcome.REPEATED, session, menu=menu)

    # ── Terminal States ───────────────────────────────────────

    def fallback(self, session: Session, reason: FallbackReason,
                 now: Optional[datetime] = None) -> TransitionResult:
        """Force a session into the fallback state (used for render overflow)."""
        return self._fallback(session, reason, now or datetime.now(timezone.utc))

    def _fallback(self, session: Session, reason: FallbackReason, now: datetime,
                  action: Optional[MenuAction] = None) -> TransitionResult:
        session.status = SessionStatus.FALLBACK
        session.updated_at = now
        logger.info("session_fallback",
                    session_id=session.id,
                    menu_id=session.current_menu_id,
                    reason=reason.value)
        return TransitionResult(TurnOutcome.FALLBACK, session, action=action, fallback_reason=reason)

    def _complete(self, session: Session, now: datetime, action: MenuAction) -> TransitionResult:
        session.status = SessionStatus.COMPLETED
        session.updated_at = now
        logger.info("session_completed",
                    session_id=session.id,
                    menu_id=session.current_menu_id)
        return TransitionResult(TurnOutcome.COMPLETED, session, action=action)

    def _invalid_transition(self, session: Session, error: InvalidTransition,
                            now: datetime) -> TransitionResult:
        logger.warning("invalid_transition",
                       session_id=session.id,
                       automation_id=error.automation_id,
                       menu_id=error.menu_id)
        return self._fallback(session, FallbackReason.INVALID_TRANSITION, now)

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _require_menu(automation: Automation, menu_id: Optional[str]) -> Menu:
        menu = automation.get_menu(menu_id) if menu_id else None
        if menu is None:
            raise InvalidTransition(automation.id, menu_id or "")
        return menu

    @staticmethod
    def _expiry(automation: Automation, now: datetime) -> datetime:
        return now + timedelta(minutes=automation.settings.session_timeout_minutes)

    def _record(self, session: Session, direction: str, text: str,
                menu_id: Optional[str], now: datetime):
        session.history.append(Turn(direction=direction, text=text, menu_id=menu_id, at=now))
        if len(session.history) > self.history_turns:
            del session.history[: len(session.history) - self.history_turns]

    def record_outbound(self, session: Session, text: str, now: Optional[datetime] = None):
        self._record(session, "outbound", text, session.current_menu_id,
                     now or datetime.now(timezone.utc))
