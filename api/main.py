"""
FastAPI Application — Webhooks + Automation management API.

Provides:
- Webhook endpoints for WhatsApp, Messenger, Instagram and the website widget
  (acknowledged immediately, processed in the background)
- Synchronous event endpoint for integrations and debugging
- Automation CRUD, validation and an isolated test run
- Widget outbox polling
- Health report (backends, channels)

Run:
    uvicorn api.main:app --reload
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from backend.connector import (
    AIAssistantClient, EscalationNotifier, MockAIAssistantClient, MockEscalationNotifier,
    create_ai_assistant, create_escalation_notifier,
)
from channels.base import ChannelRegistry
from channels.meta_adapter import InstagramAdapter, MessengerAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from channels.widget_adapter import WidgetAdapter
from config.settings import Settings, get_settings
from core.engine import AutomationEngine
from core.errors import AutomationValidationError, ConfigNotFound, StoreTimeout
from core.orchestrator import Orchestrator
from core.validation import validate_automation
from database.config_store import BaseConfigStore, InMemoryConfigStore
from database.session import close_db, init_db
from database.store_base import BaseSessionStore
from database.store_factory import create_config_store, create_session_store
from database.store_memory import InMemorySessionStore
from database.sweeper import SessionSweeper
from models.schemas import (
    Automation, ChannelType, InboundEvent, InboundKind, TurnResult, _new_id,
)

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

class Runtime:
    """Everything a running app holds on to. Built once per process."""

    def __init__(
        self,
        settings: Settings,
        sessions: BaseSessionStore,
        configs: BaseConfigStore,
        channels: ChannelRegistry,
        ai_assistant: AIAssistantClient,
        escalations: EscalationNotifier,
    ):
        self.settings = settings
        self.sessions = sessions
        self.configs = configs
        self.channels = channels
        self.ai_assistant = ai_assistant
        self.escalations = escalations
        self.engine = AutomationEngine(sessions, configs, config=settings.engine)
        self.orchestrator = Orchestrator(self.engine, channels, ai_assistant, escalations)
        self.sweeper = SessionSweeper(sessions, settings.engine.sweep_interval_s)

    @property
    def uses_sql(self) -> bool:
        db = self.settings.database
        return db.session_backend == "sql" or db.config_backend == "sql"


def build_channel_registry() -> ChannelRegistry:
    registry = ChannelRegistry()
    for adapter in (WhatsAppAdapter(), MessengerAdapter(), InstagramAdapter(), WidgetAdapter()):
        registry.register(adapter)
    return registry


def build_runtime(settings: Settings = None) -> Runtime:
    settings = settings or get_settings()
    return Runtime(
        settings=settings,
        sessions=create_session_store(settings),
        configs=create_config_store(settings),
        channels=build_channel_registry(),
        ai_assistant=create_ai_assistant(settings.collaborators),
        escalations=create_escalation_notifier(settings.collaborators),
    )


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class TestRunRequest(BaseModel):
    message: str = ""
    kind: InboundKind = InboundKind.TEXT
    channel: ChannelType = ChannelType.WIDGET
    customer_address: str = "test_user"
    first_contact: bool = True


class DuplicateRequest(BaseModel):
    name: str


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    rt = runtime or build_runtime()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if rt.uses_sql:
            await init_db()
        connect = getattr(rt.sessions, "connect", None)
        if connect is not None:
            await connect()
        await rt.channels.initialize_all(rt.settings.channels)
        await rt.sweeper.start()
        logger.info("chatbot_automation_started",
                    session_backend=type(rt.sessions).__name__,
                    config_backend=type(rt.configs).__name__)
        yield

        await rt.orchestrator.drain()
        await rt.sweeper.stop()
        await rt.channels.shutdown_all()
        await rt.configs.close()
        await rt.sessions.close()
        if rt.uses_sql:
            await close_db()
        logger.info("chatbot_automation_stopped")

    app = FastAPI(
        title="Chatbot Automation API",
        description="Multi-channel menu automation engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = rt

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreTimeout)
    async def store_timeout_handler(request: Request, exc: StoreTimeout):
        return JSONResponse(status_code=503, content={"detail": str(exc), "retryable": True})

    @app.exception_handler(ConfigNotFound)
    async def not_found_handler(request: Request, exc: ConfigNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(AutomationValidationError)
    async def validation_handler(request: Request, exc: AutomationValidationError):
        return JSONResponse(status_code=422, content={"detail": "Invalid automation", "errors": exc.errors})

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session_backend": rt.settings.database.session_backend,
            "config_backend": rt.settings.database.config_backend,
            "channels": await rt.channels.health_check_all(),
            "pending_tasks": rt.orchestrator.pending,
        }

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS
    # ══════════════════════════════════════════════════════════

    def _adapter(channel: str):
        try:
            adapter = rt.channels.get(ChannelType(channel))
        except ValueError:
            adapter = None
        if adapter is None:
            raise HTTPException(404, f"Unknown channel '{channel}'")
        return adapter

    @app.get("/webhooks/{channel}/{organization_id}")
    async def verify_webhook(channel: str, organization_id: str, request: Request):
        adapter = _adapter(channel)
        verify = getattr(adapter, "verify_webhook", None)
        challenge = verify(dict(request.query_params)) if verify else None
        if challenge is None:
            raise HTTPException(403, "Verification failed")
        return PlainTextResponse(challenge)

    @app.post("/webhooks/{channel}/{organization_id}")
    async def receive_webhook(channel: str, organization_id: str, request: Request):
        adapter = _adapter(channel)
        body_bytes = await request.body()

        check = getattr(adapter, "verify_signature", None)
        if check is not None and not check(body_bytes, request.headers.get("X-Hub-Signature-256", "")):
            logger.warning("webhook_signature_invalid", channel=channel)
            raise HTTPException(403, "Invalid signature")

        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(400, "Body must be JSON")

        events = adapter.parse_inbound(body, organization_id)
        for event in events:
            rt.orchestrator.submit(event)
        return {"status": "ok", "events": len(events)}

    @app.post("/events")
    async def receive_event(event: InboundEvent) -> dict[str, Any]:
        """Process one normalized event and return the committed turn."""
        result = await rt.orchestrator.process(event)
        return result.model_dump(mode="json")

    @app.get("/widget/{organization_id}/{address}/messages")
    async def widget_messages(organization_id: str, address: str):
        widget = rt.channels.get(ChannelType.WIDGET)
        return {"messages": widget.drain(address) if widget else []}

    # ══════════════════════════════════════════════════════════
    #  AUTOMATIONS
    # ══════════════════════════════════════════════════════════

    async def _require(automation_id: str) -> Automation:
        automation = await rt.configs.get(automation_id)
        if automation is None:
            raise ConfigNotFound(f"automation '{automation_id}'")
        return automation

    def _with_warnings(automation: Automation) -> dict[str, Any]:
        return {
            "automation": automation.model_dump(mode="json"),
            "warnings": validate_automation(automation).warnings,
        }

    @app.get("/automations")
    async def list_automations(organization_id: str = Query(...)):
        automations = await rt.configs.list_for_organization(organization_id)
        return {"automations": [a.model_dump(mode="json") for a in sorted(automations, key=lambda a: a.sort_key)]}

    @app.post("/automations", status_code=201)
    async def create_automation(automation: Automation):
        if await rt.configs.get(automation.id) is not None:
            raise HTTPException(409, "Automation already exists")
        saved = await rt.configs.save(automation)
        return _with_warnings(saved)

    @app.post("/automations/validate")
    async def validate(automation: Automation):
        report = validate_automation(automation)
        return {"valid": report.valid, "errors": report.errors, "warnings": report.warnings}

    @app.get("/automations/{automation_id}")
    async def get_automation(automation_id: str):
        return (await _require(automation_id)).model_dump(mode="json")

    @app.put("/automations/{automation_id}")
    async def update_automation(automation_id: str, automation: Automation):
        existing = await _require(automation_id)
        updated = automation.model_copy(update={
            "id": automation_id,
            "organization_id": existing.organization_id,
            "created_at": existing.created_at,
        })
        return _with_warnings(await rt.configs.save(updated))

    @app.post("/automations/{automation_id}/toggle")
    async def toggle_automation(automation_id: str):
        existing = await _require(automation_id)
        updated = await rt.configs.set_active(automation_id, not existing.is_active)
        return {"id": automation_id, "is_active": updated.is_active}

    @app.post("/automations/{automation_id}/deactivate")
    async def deactivate_automation(automation_id: str):
        await _require(automation_id)
        await rt.configs.set_active(automation_id, False)
        return {"id": automation_id, "is_active": False}

    @app.post("/automations/{automation_id}/duplicate", status_code=201)
    async def duplicate_automation(automation_id: str, req: DuplicateRequest):
        existing = await _require(automation_id)
        now = datetime.now(timezone.utc)
        copy = existing.model_copy(deep=True, update={
            "id": _new_id(), "name": req.name, "is_active": False,
            "created_at": now, "updated_at": now,
        })
        return _with_warnings(await rt.configs.save(copy))

    @app.delete("/automations/{automation_id}")
    async def delete_automation(automation_id: str):
        if not await rt.configs.delete(automation_id):
            raise ConfigNotFound(f"automation '{automation_id}'")
        return {"id": automation_id, "deleted": True}

    @app.post("/automations/{automation_id}/test")
    async def test_automation(automation_id: str, req: TestRunRequest):
        """One turn against a throwaway session store; drafts may be tested too."""
        automation = await _require(automation_id)
        sandbox = automation.model_copy(deep=True, update={"is_active": True, "channels": []})
        engine = AutomationEngine(
            InMemorySessionStore(), InMemoryConfigStore([sandbox]), config=rt.settings.engine,
        )
        result: TurnResult = await engine.handle_event(InboundEvent(
            organization_id=sandbox.organization_id,
            channel=req.channel,
            customer_address=req.customer_address,
            kind=req.kind,
            payload=req.message,
            event_id=_new_id(),
            is_first_contact=req.first_contact,
        ))
        return {
            "session_id": result.session.id if result.session else None,
            "outcome": result.outcome.value,
            "messages": [m.model_dump(mode="json", exclude_none=True) for m in result.messages],
            "fallback_triggered": result.fallback_triggered,
            "config_errors": result.config_errors,
        }

    return app


app = create_app()
