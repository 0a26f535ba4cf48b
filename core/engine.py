"""
Automation Engine — one inbound event in, one committed turn out.

    event → load session ──none──→ first-contact ledger → Trigger Matcher → start
                        └─live──→ load Automation → Menu State Machine → advance
          → render for the channel (overflow → fallback)
          → compare-and-swap the session (terminal → delete)
          → TurnResult (messages, fallback decision)

Nothing leaves the process before the session write is committed: the
caller (core/orchestrator.py) only sends what a committed TurnResult holds.
A lost compare-and-swap re-reads the session and re-plans the turn, up to
engine.cas_retries times, then the event is dropped.

A write that times out may still land. Its event id is remembered, and when
the retried event then finds its own write committed, the current menu is
rendered again instead of answering "duplicate" with nothing to send.
"""
from __future__ import annotations

import asyncio
import structlog
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from channels.capabilities import capabilities_for
from channels.renderer import MessageRenderer
from config.settings import EngineConfig, get_settings
from context.state_machine import MenuStateMachine, TransitionResult
from core.errors import RenderOverflow, SessionConflict, StoreTimeout
from core.fallback import FallbackDispatcher
from database.config_store import BaseConfigStore
from database.store_base import BaseSessionStore
from models.schemas import (
    Automation, AutomationSettings, FallbackReason, InboundEvent, Session,
    SessionKey, TextMessage, TurnOutcome, TurnResult,
)
from rules.matcher import TriggerMatcher

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def summarize_message(message: Any) -> str:
    """Plain-text form of an outbound message, kept in session history."""
    for attr in ("text", "body", "caption", "url"):
        value = getattr(message, attr, None)
        if value:
            return value
    return ""


class AutomationEngine:
    """
    Coordinates matcher, state machine, renderer and fallback around the
    session store. The only state it holds is the set of event ids whose
    session write timed out; safe to share across tasks.
    """

    max_unconfirmed = 1024

    def __init__(
        self,
        sessions: BaseSessionStore,
        configs: BaseConfigStore,
        matcher: Optional[TriggerMatcher] = None,
        state_machine: Optional[MenuStateMachine] = None,
        renderer: Optional[MessageRenderer] = None,
        fallback: Optional[FallbackDispatcher] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config or get_settings().engine
        self.sessions = sessions
        self.configs = configs
        self.matcher = matcher or TriggerMatcher(configs)
        self.state_machine = state_machine or MenuStateMachine(
            max_unresolved_attempts=self.config.max_unresolved_attempts,
            history_turns=self.config.history_turns,
        )
        self.renderer = renderer or MessageRenderer()
        self.fallback = fallback or FallbackDispatcher(handoff_turns=self.config.history_turns)
        self._clock = clock
        self._unconfirmed: OrderedDict[str, None] = OrderedDict()

    # ══════════════════════════════════════════════════════════
    #  Entry point
    # ══════════════════════════════════════════════════════════

    async def handle_event(self, event: InboundEvent) -> TurnResult:
        key = SessionKey.from_event(event)
        ledger: dict[str, bool] = {}        # the contact ledger is consulted once per event

        for attempt in range(self.config.cas_retries + 1):
            try:
                result = await self._attempt(event, key, ledger)
            except SessionConflict as e:
                logger.info("session_conflict_retry",
                            key=e.key,
                            attempt=attempt + 1,
                            event_id=event.event_id)
                continue

            logger.info("turn_processed",
                        key=str(key),
                        outcome=result.outcome.value,
                        automation_id=result.automation_id,
                        messages=len(result.messages))
            return result

        logger.warning("event_dropped_after_conflicts",
                       key=str(key),
                       event_id=event.event_id,
                       attempts=self.config.cas_retries + 1)
        return TurnResult(outcome=TurnOutcome.DROPPED)

    async def _attempt(
        self,
        event: InboundEvent,
        key: SessionKey,
        ledger: dict[str, bool],
    ) -> TurnResult:
        now = self._clock()
        session = await self._call("get", self.sessions.get(key))

        if session is not None and event.event_id and session.last_event_id == event.event_id:
            if event.event_id in self._unconfirmed:
                del self._unconfirmed[event.event_id]
                return await self._redeliver(event, session)
            logger.info("duplicate_event_ignored", key=str(key), event_id=event.event_id)
            return TurnResult(
                outcome=TurnOutcome.DUPLICATE,
                automation_id=session.automation_id,
                session=session,
            )

        if session is None:
            if "first_contact" not in ledger:
                ledger["first_contact"] = await self._first_contact(event, key)
            match = await self.matcher.match(event, ledger["first_contact"])
            if match is None:
                return TurnResult(outcome=TurnOutcome.NO_MATCH)
            automation: Optional[Automation] = match.automation
            transition = self.state_machine.start(automation, match.menu_id, event, now)
            expected_version = 0
        else:
            automation = await self._load_automation(session.automation_id)
            transition = self.state_machine.advance(session, automation, event, now)
            expected_version = session.version

        result = self._plan(transition, automation, event, now)
        committed = None if transition.is_terminal else transition.session

        try:
            swapped = await self._call(
                "compare_and_swap",
                self.sessions.compare_and_swap(key, expected_version, committed),
                write=True,
            )
        except StoreTimeout:
            self._mark_unconfirmed(event.event_id)
            raise
        if not swapped:
            raise SessionConflict(str(key))
        if event.event_id:
            self._unconfirmed.pop(event.event_id, None)

        if committed is not None:
            committed.version = expected_version + 1
        return result

    # ══════════════════════════════════════════════════════════
    #  Planning: render and decide, no I/O
    # ══════════════════════════════════════════════════════════

    def _plan(
        self,
        transition: TransitionResult,
        automation: Optional[Automation],
        event: InboundEvent,
        now: datetime,
    ) -> TurnResult:
        caps = capabilities_for(event.channel)
        settings = automation.settings if automation else AutomationSettings()
        messages: list = []
        config_errors: list[str] = []

        if transition.action is not None:
            rendered = self.renderer.render_action(transition.action, caps, transition.session.variables)
            if rendered is not None:
                messages.append(rendered)

        if transition.menu is not None:
            try:
                messages.append(self.renderer.render(
                    transition.menu, caps, transition.session.variables,
                ))
            except RenderOverflow as e:
                logger.error("render_overflow",
                             automation_id=transition.session.automation_id,
                             menu_id=e.menu_id,
                             channel=e.channel,
                             detail=e.detail)
                config_errors.append(str(e))
                transition = self.state_machine.fallback(
                    transition.session, FallbackReason.RENDER_OVERFLOW, now,
                )

        decision = None
        if transition.outcome == TurnOutcome.FALLBACK:
            assistant_id = transition.action.assistant_id if transition.action else None
            decision = self.fallback.fallback(
                transition.session, transition.fallback_reason, settings, assistant_id,
            )
            messages.append(TextMessage(text=settings.fallback_message))

        if not transition.is_terminal:
            for message in messages:
                self.state_machine.record_outbound(transition.session, summarize_message(message), now)

        return TurnResult(
            outcome=transition.outcome,
            automation_id=transition.session.automation_id,
            session=transition.session,
            messages=messages,
            fallback=decision,
            config_errors=config_errors,
        )

    async def _redeliver(self, event: InboundEvent, session: Session) -> TurnResult:
        """Render the committed state of a turn whose write outcome was unknown."""
        automation = await self._load_automation(session.automation_id)
        menu = automation.get_menu(session.current_menu_id) if automation else None
        messages: list = []
        if menu is not None:
            try:
                messages.append(self.renderer.render(
                    menu, capabilities_for(event.channel), session.variables,
                ))
            except RenderOverflow as e:
                logger.error("render_overflow", automation_id=session.automation_id,
                             menu_id=e.menu_id, channel=e.channel, detail=e.detail)

        logger.info("unconfirmed_turn_redelivered",
                    key=str(session.key),
                    event_id=event.event_id,
                    menu_id=session.current_menu_id,
                    messages=len(messages))
        return TurnResult(
            outcome=TurnOutcome.STARTED if session.version == 1 else TurnOutcome.ADVANCED,
            automation_id=session.automation_id,
            session=session,
            messages=messages,
        )

    def _mark_unconfirmed(self, event_id: Optional[str]) -> None:
        if not event_id:
            return
        self._unconfirmed[event_id] = None
        self._unconfirmed.move_to_end(event_id)
        while len(self._unconfirmed) > self.max_unconfirmed:
            self._unconfirmed.popitem(last=False)

    # ══════════════════════════════════════════════════════════
    #  Store access
    # ══════════════════════════════════════════════════════════

    async def _first_contact(self, event: InboundEvent, key: SessionKey) -> bool:
        seen_first_time = await self._call(
            "remember_contact", self.sessions.remember_contact(key, event.event_id), write=True,
        )
        if event.is_first_contact is not None:
            return event.is_first_contact
        return seen_first_time

    async def _load_automation(self, automation_id: str) -> Optional[Automation]:
        # CachedConfigStore bounds its backend at store_timeout_s and then serves
        # its last snapshot, so the outer bound here must be wider.
        return await self._call(
            "config.get", self.configs.get(automation_id),
            timeout=2 * self.config.store_timeout_s,
        )

    async def _call(self, operation: str, awaitable: Awaitable, write: bool = False,
                    timeout: Optional[float] = None):
        """
        Bound a store call by engine.store_timeout_s. Writes are shielded so a
        cancelled caller never leaves half a write behind.
        """
        timeout = timeout or self.config.store_timeout_s
        try:
            if write:
                return await asyncio.wait_for(asyncio.shield(awaitable), timeout)
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as e:
            logger.error("store_timeout", operation=operation, timeout_s=timeout)
            raise StoreTimeout(operation, timeout) from e

    # ══════════════════════════════════════════════════════════
    #  Introspection
    # ══════════════════════════════════════════════════════════

    async def get_session(self, event: InboundEvent) -> Optional[Session]:
        return await self._call("get", self.sessions.get(SessionKey.from_event(event)))
