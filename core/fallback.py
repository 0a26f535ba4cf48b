"""
Fallback Dispatcher — decides where a conversation goes when the bot gives up.

    fallback_target = ai     → AIHandoff (variables + recent turns for context)
    fallback_target = human  → EscalationEvent for the human queue

The decision is data only. Delivery to the assistant or the escalation
channel happens after the session change is committed (core/orchestrator.py).
"""
from __future__ import annotations

import structlog
from typing import Optional

from models.schemas import (
    AIHandoff, AutomationSettings, EscalationEvent, FallbackDecision,
    FallbackReason, FallbackTarget, Session,
)

logger = structlog.get_logger()


class FallbackDispatcher:

    def __init__(self, handoff_turns: int = 10):
        self.handoff_turns = handoff_turns

    def fallback(
        self,
        session: Session,
        reason: FallbackReason,
        settings: Optional[AutomationSettings] = None,
        assistant_id: Optional[str] = None,
    ) -> FallbackDecision:
        settings = settings or AutomationSettings()

        if settings.fallback_target == FallbackTarget.HUMAN:
            escalation = EscalationEvent(
                customer_address=session.customer_address,
                channel=session.channel,
                organization_id=session.organization_id,
                automation_id=session.automation_id,
                menu_id_at_failure=session.current_menu_id,
                reason=reason,
                variables=dict(session.variables),
            )
            logger.info("fallback_escalation",
                        session_id=session.id,
                        escalation_id=escalation.id,
                        reason=reason.value)
            return FallbackDecision(escalation=escalation)

        handoff = AIHandoff(
            customer_address=session.customer_address,
            organization_id=session.organization_id,
            channel=session.channel,
            automation_id=session.automation_id,
            reason=reason,
            variables=dict(session.variables),
            recent_turns=list(session.history[-self.handoff_turns:]),
            assistant_id=assistant_id,
        )
        logger.info("fallback_ai_handoff",
                    session_id=session.id,
                    reason=reason.value,
                    assistant_id=assistant_id)
        return FallbackDecision(handoff=handoff)
