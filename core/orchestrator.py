"""
Orchestrator — runs committed turns out to the world.

Architecture:
  Inbound:  webhook → channel adapter parses InboundEvents
            → submit(): background task per event (webhooks ack at once)
            → AutomationEngine.handle_event(): session committed
            → deliver rendered messages through the channel adapter
            → fire-and-forget: AI handoff / escalation / config-error report

The engine decides, the orchestrator delivers. Delivery never runs before
the session write is committed, and a failed delivery never rolls a
session back.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Coroutine, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from backend.connector import AIAssistantClient, EscalationNotifier
from channels.base import ChannelError, ChannelRegistry
from core.engine import AutomationEngine
from core.errors import StoreTimeout
from models.schemas import InboundEvent, TurnResult

logger = structlog.get_logger()


class Orchestrator:

    def __init__(
        self,
        engine: AutomationEngine,
        channels: ChannelRegistry,
        ai_assistant: AIAssistantClient,
        escalations: EscalationNotifier,
        store_retry_attempts: int = 3,
    ):
        self.engine = engine
        self.channels = channels
        self.ai_assistant = ai_assistant
        self.escalations = escalations
        self.store_retry_attempts = store_retry_attempts
        self._tasks: set[asyncio.Task] = set()

    # ══════════════════════════════════════════════════════════
    #  INBOUND
    # ══════════════════════════════════════════════════════════

    async def process(self, event: InboundEvent) -> TurnResult:
        """Run one event through the engine and deliver what it committed."""
        logger.info("inbound_event",
                    organization_id=event.organization_id,
                    channel=event.channel.value,
                    sender=event.customer_address,
                    kind=event.kind.value,
                    event_id=event.event_id)

        result = await self.engine.handle_event(event)
        await self._deliver(event, result)
        self._notify(event, result)
        return result

    def submit(self, event: InboundEvent) -> asyncio.Task:
        """Process in the background, retrying store timeouts with backoff."""
        task = asyncio.create_task(self._process_with_retry(event), name=f"event:{event.event_id}")
        self._track(task)
        return task

    async def _process_with_retry(self, event: InboundEvent) -> Optional[TurnResult]:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(StoreTimeout),
                stop=stop_after_attempt(self.store_retry_attempts),
                wait=wait_exponential(multiplier=0.5, max=5),
                reraise=True,
            ):
                with attempt:
                    return await self.process(event)
        except Exception as e:
            logger.error("event_processing_failed",
                         organization_id=event.organization_id,
                         channel=event.channel.value,
                         sender=event.customer_address,
                         event_id=event.event_id,
                         error=str(e))
        return None

    # ══════════════════════════════════════════════════════════
    #  OUTBOUND
    # ══════════════════════════════════════════════════════════

    async def _deliver(self, event: InboundEvent, result: TurnResult) -> None:
        if not result.messages:
            return
        adapter = self.channels.get(event.channel)
        if adapter is None:
            logger.error("channel_not_registered", channel=event.channel.value)
            return
        for message in result.messages:
            try:
                await adapter.send(event.customer_address, message, event.channel_id)
            except ChannelError as e:
                logger.error("message_delivery_failed",
                             channel=event.channel.value,
                             to=event.customer_address,
                             message_type=message.type,
                             error=str(e))
                return

    def _notify(self, event: InboundEvent, result: TurnResult) -> None:
        decision = result.fallback
        if decision is not None and decision.handoff is not None:
            self._spawn(self.ai_assistant.handoff(decision.handoff), "ai_handoff")
        if decision is not None and decision.escalation is not None:
            self._spawn(self.escalations.raise_escalation(decision.escalation), "escalation")
        for detail in result.config_errors:
            self._spawn(
                self.escalations.report_configuration_error(
                    result.automation_id or "", event.organization_id, detail,
                ),
                "configuration_error",
            )

    # ══════════════════════════════════════════════════════════
    #  Background tasks
    # ══════════════════════════════════════════════════════════

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        async def runner():
            try:
                await coro
            except Exception as e:
                logger.error("background_task_failed", task=name, error=str(e))

        self._track(asyncio.create_task(runner(), name=name))

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every background task, including ones spawned while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
