"""
Trigger Matcher — Decides which Automation and menu a fresh message enters.

Only consulted when the customer has no active session. Automations are
scanned by (priority, id) and their triggers in declaration order; the first
trigger that matches wins, so the same inputs always give the same answer.

    keyword        text events only; substring match, case folded unless
                   the trigger is case sensitive
    button_click   button events only; exact payload id
    first_message  any event, when this is the address's first contact

After an Automation's own triggers, its welcome menu (if enabled) counts as
an implicit first_message trigger.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Iterable, Optional

from database.config_store import BaseConfigStore
from models.schemas import Automation, InboundEvent, InboundKind, Trigger, TriggerType
from utils.text import fold

logger = structlog.get_logger()


@dataclass(frozen=True)
class TriggerMatch:
    automation: Automation
    menu_id: str
    trigger_id: str                 # "welcome" for the implicit welcome trigger

    @property
    def automation_id(self) -> str:
        return self.automation.id


def keyword_matches(trigger: Trigger, text: str) -> bool:
    haystack = fold(text, trigger.case_sensitive)
    for keyword in trigger.keywords:
        needle = fold(keyword, trigger.case_sensitive)
        if needle and needle in haystack:
            return True
    return False


def trigger_matches(trigger: Trigger, event: InboundEvent, first_contact: bool) -> bool:
    if trigger.type == TriggerType.FIRST_MESSAGE:
        return first_contact
    if trigger.type == TriggerType.KEYWORD:
        return event.kind == InboundKind.TEXT and keyword_matches(trigger, event.payload)
    if trigger.type == TriggerType.BUTTON_CLICK:
        ids = trigger.payload_ids or trigger.keywords
        return event.kind == InboundKind.BUTTON_CLICK and event.payload in ids
    return False


def match_automations(
    automations: Iterable[Automation],
    event: InboundEvent,
    first_contact: bool = False,
) -> Optional[TriggerMatch]:
    """Pure matching over an already-scoped set of Automations."""
    for automation in sorted(automations, key=lambda a: a.sort_key):
        if not automation.is_active:
            continue
        for trigger in automation.triggers:
            if automation.get_menu(trigger.menu_id) is None:
                logger.warning("trigger_skipped_unknown_menu",
                               automation_id=automation.id,
                               trigger_id=trigger.id,
                               menu_id=trigger.menu_id)
                continue
            if trigger_matches(trigger, event, first_contact):
                return TriggerMatch(automation, trigger.menu_id, trigger.id)

        settings = automation.settings
        if first_contact and settings.welcome_enabled:
            if automation.get_menu(settings.welcome_menu_id) is not None:
                return TriggerMatch(automation, settings.welcome_menu_id, "welcome")
            logger.warning("welcome_skipped_unknown_menu",
                           automation_id=automation.id,
                           menu_id=settings.welcome_menu_id)
    return None


class TriggerMatcher:
    """Matches inbound events against the active Automations of their scope."""

    def __init__(self, config_store: BaseConfigStore):
        self.config = config_store

    async def match(self, event: InboundEvent, first_contact: bool = False) -> Optional[TriggerMatch]:
        automations = await self.config.list_active(
            event.organization_id, event.channel, event.channel_id,
        )
        result = match_automations(automations, event, first_contact)
        if result:
            logger.info("trigger_matched",
                        organization_id=event.organization_id,
                        channel=event.channel.value,
                        automation_id=result.automation_id,
                        trigger_id=result.trigger_id,
                        menu_id=result.menu_id)
        else:
            logger.debug("no_trigger_matched",
                         organization_id=event.organization_id,
                         channel=event.channel.value,
                         candidates=len(automations))
        return result
