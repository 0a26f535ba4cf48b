"""
Backend Connector — HTTP collaborators of the automation engine.

  AIAssistantClient      receives an AIHandoff when the bot gives up
  EscalationNotifier     receives EscalationEvents and configuration errors
  RestConfigStore        reads / writes Automations on an external config service

Each has a REST implementation (httpx + tenacity retries) and, where it
makes sense, an in-process mock for development and tests. URLs and the
bearer token come from the `collaborators` section of settings.yaml.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import CollaboratorConfig, get_settings
from database.config_store import BaseConfigStore
from models.schemas import AIHandoff, Automation, EscalationEvent

logger = structlog.get_logger()


class _RestClient:
    """Lazily created httpx client with bearer auth and retried requests."""

    def __init__(self, base_url: str, config: CollaboratorConfig):
        self.base_url = base_url
        self.config = config
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_token:
                headers["Authorization"] = f"Bearer {self.config.api_token}"
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.config.timeout_s,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10))
    async def _request(self, method: str, url: str, **kwargs) -> Any:
        client = await self._get_client()
        response = await client.request(method, url, **kwargs)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json() if response.content else {}

    async def close(self):
        if self.client:
            await self.client.aclose()


# ══════════════════════════════════════════════════════════════
#  AI ASSISTANT
# ══════════════════════════════════════════════════════════════

class AIAssistantClient(abc.ABC):

    @abc.abstractmethod
    async def handoff(self, payload: AIHandoff) -> bool:
        """Hand a conversation to the AI assistant. True when accepted."""
        ...

    async def close(self):
        pass


class RESTAIAssistantClient(_RestClient, AIAssistantClient):

    def __init__(self, config: CollaboratorConfig = None):
        config = config or get_settings().collaborators
        super().__init__(config.ai_assistant_url, config)

    async def handoff(self, payload: AIHandoff) -> bool:
        try:
            await self._request("POST", "/handoffs", json=payload.model_dump(mode="json"))
            return True
        except Exception as e:
            logger.error("ai_handoff_failed",
                         customer_address=payload.customer_address,
                         automation_id=payload.automation_id,
                         error=str(e))
            return False


class MockAIAssistantClient(AIAssistantClient):
    """Records handoffs in memory."""

    def __init__(self):
        self.handoffs: list[AIHandoff] = []

    async def handoff(self, payload: AIHandoff) -> bool:
        self.handoffs.append(payload)
        logger.info("mock_ai_handoff",
                    customer_address=payload.customer_address,
                    reason=payload.reason.value)
        return True


# ══════════════════════════════════════════════════════════════
#  ESCALATION
# ══════════════════════════════════════════════════════════════

class EscalationNotifier(abc.ABC):

    @abc.abstractmethod
    async def raise_escalation(self, event: EscalationEvent) -> bool:
        ...

    @abc.abstractmethod
    async def report_configuration_error(self, automation_id: str, organization_id: str,
                                         detail: str) -> bool:
        """Tell the Automation owner that a menu cannot be shown."""
        ...

    async def close(self):
        pass


class RESTEscalationNotifier(_RestClient, EscalationNotifier):

    def __init__(self, config: CollaboratorConfig = None):
        config = config or get_settings().collaborators
        super().__init__(config.escalation_url, config)

    async def raise_escalation(self, event: EscalationEvent) -> bool:
        try:
            await self._request("POST", "/escalations", json=event.model_dump(mode="json"))
            return True
        except Exception as e:
            logger.error("escalation_failed", escalation_id=event.id, error=str(e))
            return False

    async def report_configuration_error(self, automation_id: str, organization_id: str,
                                         detail: str) -> bool:
        try:
            await self._request("POST", "/configuration-errors", json={
                "automation_id": automation_id,
                "organization_id": organization_id,
                "detail": detail,
            })
            return True
        except Exception as e:
            logger.error("configuration_error_report_failed",
                         automation_id=automation_id, error=str(e))
            return False


class MockEscalationNotifier(EscalationNotifier):

    def __init__(self):
        self.escalations: list[EscalationEvent] = []
        self.configuration_errors: list[dict[str, str]] = []

    async def raise_escalation(self, event: EscalationEvent) -> bool:
        self.escalations.append(event)
        logger.info("mock_escalation", escalation_id=event.id, reason=event.reason.value)
        return True

    async def report_configuration_error(self, automation_id: str, organization_id: str,
                                         detail: str) -> bool:
        self.configuration_errors.append({
            "automation_id": automation_id,
            "organization_id": organization_id,
            "detail": detail,
        })
        return True


# ══════════════════════════════════════════════════════════════
#  CONFIG SERVICE
# ══════════════════════════════════════════════════════════════

class RestConfigStore(_RestClient, BaseConfigStore):
    """
    Config store backed by an external service:

        GET    /automations/{id}
        GET    /organizations/{organization_id}/automations
        PUT    /automations/{id}
        DELETE /automations/{id}
    """

    def __init__(self, config: CollaboratorConfig = None):
        config = config or get_settings().collaborators
        super().__init__(config.config_service_url, config)

    async def get(self, automation_id: str) -> Optional[Automation]:
        data = await self._request("GET", f"/automations/{automation_id}")
        return Automation.model_validate(data) if data else None

    async def list_for_organization(self, organization_id: str) -> list[Automation]:
        data = await self._request("GET", f"/organizations/{organization_id}/automations")
        items = data if isinstance(data, list) else (data or {}).get("data", [])
        return [Automation.model_validate(item) for item in items]

    async def _write(self, automation: Automation) -> Automation:
        await self._request("PUT", f"/automations/{automation.id}",
                            json=automation.model_dump(mode="json"))
        return automation

    async def delete(self, automation_id: str) -> bool:
        return await self._request("DELETE", f"/automations/{automation_id}") is not None


# ══════════════════════════════════════════════════════════════
#  FACTORIES
# ══════════════════════════════════════════════════════════════

def create_ai_assistant(config: CollaboratorConfig = None) -> AIAssistantClient:
    config = config or get_settings().collaborators
    if config.ai_assistant_url:
        return RESTAIAssistantClient(config)
    logger.warning("using_mock_ai_assistant", reason="collaborators.ai_assistant_url is empty")
    return MockAIAssistantClient()


def create_escalation_notifier(config: CollaboratorConfig = None) -> EscalationNotifier:
    config = config or get_settings().collaborators
    if config.escalation_url:
        return RESTEscalationNotifier(config)
    logger.warning("using_mock_escalation_notifier", reason="collaborators.escalation_url is empty")
    return MockEscalationNotifier()
