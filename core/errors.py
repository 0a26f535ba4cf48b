"""
Engine error taxonomy.

Only StoreTimeout ever reaches the webhook caller. InvalidTransition and
RenderOverflow are turned into a fallback inside the engine, SessionConflict
is retried once and then dropped. ConfigNotFound is the management API's 404.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base exception for all automation engine failures."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class ConfigNotFound(EngineError):
    def __init__(self, scope: str):
        self.scope = scope
        super().__init__(f"No automation found for {scope}")


class InvalidTransition(EngineError):
    def __init__(self, automation_id: str, menu_id: str):
        self.automation_id = automation_id
        self.menu_id = menu_id
        super().__init__(f"Menu '{menu_id}' does not exist in automation '{automation_id}'")


class RenderOverflow(EngineError):
    """A menu cannot be expressed within a channel's limits."""

    def __init__(self, menu_id: str, channel: str, detail: str):
        self.menu_id = menu_id
        self.channel = channel
        self.detail = detail
        super().__init__(f"Menu '{menu_id}' cannot be rendered on {channel}: {detail}")


class SessionConflict(EngineError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Session {key} was modified concurrently")


class StoreTimeout(EngineError):
    def __init__(self, operation: str, timeout_s: float = 0.0):
        self.operation = operation
        super().__init__(
            f"Store operation '{operation}' timed out after {timeout_s}s", retryable=True,
        )


class AutomationValidationError(EngineError):
    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Invalid automation: {'; '.join(errors)}")
