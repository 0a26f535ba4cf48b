"""
Core data models for the chatbot automation engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    WHATSAPP = "whatsapp"
    WIDGET = "widget"
    MESSENGER = "messenger"
    INSTAGRAM = "instagram"


class TriggerType(str, Enum):
    KEYWORD = "keyword"
    FIRST_MESSAGE = "first_message"
    BUTTON_CLICK = "button_click"


class MenuType(str, Enum):
    TEXT = "text"
    BUTTONS = "buttons"
    LIST = "list"


class HeaderType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"


class ActionType(str, Enum):
    SHOW_MENU = "show_menu"
    SEND_MESSAGE = "send_message"
    FALLBACK_AI = "fallback_ai"
    END = "end"


class UnknownInputBehavior(str, Enum):
    REPEAT_MENU = "repeat_menu"
    FALLBACK_AI = "fallback_ai"


class FallbackTarget(str, Enum):
    AI = "ai"
    HUMAN = "human"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FALLBACK = "fallback"


class InboundKind(str, Enum):
    TEXT = "text"
    BUTTON_CLICK = "button_click"
    MEDIA = "media"


class FallbackReason(str, Enum):
    UNKNOWN_INPUT = "unknown_input"
    MAX_ATTEMPTS = "max_unresolved_attempts"
    AI_REQUESTED = "fallback_ai_action"
    INVALID_TRANSITION = "invalid_transition"
    RENDER_OVERFLOW = "render_overflow"
    AUTOMATION_UNAVAILABLE = "automation_unavailable"


class TurnOutcome(str, Enum):
    STARTED = "started"
    ADVANCED = "advanced"
    REPEATED = "repeated"
    COMPLETED = "completed"
    FALLBACK = "fallback"
    NO_MATCH = "no_match"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"


# ──────────────────────────────────────────────────────────────
#  Automation configuration: triggers, menus, settings
# ──────────────────────────────────────────────────────────────

class ChannelScope(BaseModel):
    """Restricts an Automation to one channel, optionally one channel identity."""
    channel: ChannelType
    enabled: bool = True
    channel_id: Optional[str] = None          # WhatsApp phone_number_id, widget id, page id

    def matches(self, channel: ChannelType, channel_id: Optional[str]) -> bool:
        if not self.enabled or self.channel != channel:
            return False
        return self.channel_id is None or self.channel_id == channel_id


class Trigger(BaseModel):
    id: str = Field(default_factory=_new_id)
    type: TriggerType
    keywords: list[str] = []
    case_sensitive: bool = False
    payload_ids: list[str] = []               # button_click only; falls back to keywords
    menu_id: str


class MenuHeader(BaseModel):
    type: HeaderType
    content: str                              # text or media URL


class ActionMedia(BaseModel):
    type: Literal["image", "video", "document"]
    url: str
    caption: Optional[str] = None


class MenuAction(BaseModel):
    """What happens when an option is chosen. Closed set, see ActionType."""
    type: ActionType
    target_menu_id: Optional[str] = None      # show_menu
    message: Optional[str] = None             # send_message, optional closing text for end
    media: Optional[ActionMedia] = None
    then_end: bool = False                    # send_message chained to end
    assistant_id: Optional[str] = None        # fallback_ai


class MenuOption(BaseModel):
    id: str
    title: str
    description: Optional[str] = None         # list rows only
    action: MenuAction


_MENU_TYPE_ALIASES = {
    "interactive_buttons": MenuType.BUTTONS.value,
    "interactive_list": MenuType.LIST.value,
}


class Menu(BaseModel):
    id: str
    name: str
    message_type: MenuType = MenuType.BUTTONS
    header: Optional[MenuHeader] = None
    body: str
    footer: Optional[str] = None
    options: list[MenuOption] = []
    variable_name: Optional[str] = None       # free-text capture key
    next_action: Optional[MenuAction] = None  # implicit action after free-text capture

    @field_validator("message_type", mode="before")
    @classmethod
    def _accept_legacy_type_names(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _MENU_TYPE_ALIASES.get(value, value)
        return value

    @property
    def is_free_text(self) -> bool:
        return self.message_type == MenuType.TEXT and not self.options

    @property
    def variable_key(self) -> str:
        return self.variable_name or self.id

    def get_option(self, option_id: str) -> Optional[MenuOption]:
        return next((o for o in self.options if o.id == option_id), None)


class AutomationSettings(BaseModel):
    welcome_enabled: bool = False
    welcome_menu_id: Optional[str] = None
    session_timeout_minutes: int = 30
    fallback_message: str = "I'll connect you with our support team for assistance."
    unknown_input_behavior: UnknownInputBehavior = UnknownInputBehavior.REPEAT_MENU
    fallback_target: FallbackTarget = FallbackTarget.AI
    max_unresolved_attempts: Optional[int] = None   # overrides the engine default


class Automation(BaseModel):
    """One prioritized bundle of triggers, menus and settings for an organization."""
    id: str = Field(default_factory=_new_id)
    organization_id: str
    channels: list[ChannelScope] = []         # empty = every channel of the organization
    name: str
    description: str = ""
    is_active: bool = False
    priority: int = 1                         # lower = evaluated first
    triggers: list[Trigger] = []
    menus: list[Menu] = []
    settings: AutomationSettings = Field(default_factory=AutomationSettings)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def get_menu(self, menu_id: Optional[str]) -> Optional[Menu]:
        if not menu_id:
            return None
        return next((m for m in self.menus if m.id == menu_id), None)

    def applies_to(self, channel: ChannelType, channel_id: Optional[str] = None) -> bool:
        if not self.channels:
            return True
        return any(scope.matches(channel, channel_id) for scope in self.channels)

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.priority, self.id)


# ──────────────────────────────────────────────────────────────
#  Session: the only mutable per-customer state
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SessionKey:
    """Addresses one conversation: (organization, channel, customer address)."""
    organization_id: str
    channel: ChannelType
    customer_address: str

    @classmethod
    def from_event(cls, event: InboundEvent) -> SessionKey:
        return cls(event.organization_id, event.channel, event.customer_address)

    def __str__(self) -> str:
        return f"{self.organization_id}:{self.channel.value}:{self.customer_address}"


class Turn(BaseModel):
    direction: Literal["inbound", "outbound"]
    text: str
    menu_id: Optional[str] = None
    at: datetime = Field(default_factory=_utcnow)


class Session(BaseModel):
    id: str = Field(default_factory=_new_id)
    automation_id: str
    organization_id: str
    channel: ChannelType
    customer_address: str
    current_menu_id: str
    variables: dict[str, str] = {}
    status: SessionStatus = SessionStatus.ACTIVE
    version: int = 0                          # CAS token; 0 means "not stored yet"
    unresolved_attempts: int = 0
    last_event_id: Optional[str] = None
    history: list[Turn] = []
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime

    @property
    def key(self) -> SessionKey:
        return SessionKey(self.organization_id, self.channel, self.customer_address)

    @property
    def is_terminal(self) -> bool:
        return self.status != SessionStatus.ACTIVE

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """The single staleness rule shared by every store backend."""
        return self.expires_at <= (now or _utcnow())


# ──────────────────────────────────────────────────────────────
#  Inbound event: normalized webhook payload
# ──────────────────────────────────────────────────────────────

class InboundEvent(BaseModel):
    organization_id: str
    channel: ChannelType
    customer_address: str
    kind: InboundKind = InboundKind.TEXT
    payload: str = ""                         # text, selected option id, or media url
    channel_id: Optional[str] = None
    event_id: Optional[str] = None            # channel message id, used for idempotency
    is_first_contact: Optional[bool] = None   # external signal, when the router knows
    sender_name: str = ""
    received_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Outbound messages: handed to the channel sender
# ──────────────────────────────────────────────────────────────

class TextMessage(BaseModel):
    type: Literal["text"] = "text"
    text: str


class Button(BaseModel):
    id: str
    title: str


class ButtonsMessage(BaseModel):
    type: Literal["buttons"] = "buttons"
    body: str
    buttons: list[Button]
    header: Optional[MenuHeader] = None
    footer: Optional[str] = None


class ListRow(BaseModel):
    id: str
    title: str
    description: Optional[str] = None


class ListSection(BaseModel):
    title: str
    rows: list[ListRow]


class ListMessage(BaseModel):
    type: Literal["list"] = "list"
    body: str
    button_label: str = "View Options"
    sections: list[ListSection]
    header: Optional[MenuHeader] = None
    footer: Optional[str] = None


class MediaMessage(BaseModel):
    type: Literal["media"] = "media"
    media_type: Literal["image", "video", "document"]
    url: str
    caption: Optional[str] = None


OutboundMessage = Annotated[
    Union[TextMessage, ButtonsMessage, ListMessage, MediaMessage],
    Field(discriminator="type"),
]


# ──────────────────────────────────────────────────────────────
#  Fallback payloads: to the AI assistant or a human
# ──────────────────────────────────────────────────────────────

class AIHandoff(BaseModel):
    customer_address: str
    organization_id: str
    channel: ChannelType
    automation_id: str
    reason: FallbackReason
    variables: dict[str, str] = {}
    recent_turns: list[Turn] = []
    assistant_id: Optional[str] = None


class EscalationEvent(BaseModel):
    id: str = Field(default_factory=_new_id)
    customer_address: str
    channel: ChannelType
    organization_id: str
    automation_id: str
    menu_id_at_failure: str
    reason: FallbackReason
    variables: dict[str, str] = {}
    raised_at: datetime = Field(default_factory=_utcnow)


class FallbackDecision(BaseModel):
    """Exactly one of handoff / escalation is set."""
    handoff: Optional[AIHandoff] = None
    escalation: Optional[EscalationEvent] = None

    @property
    def is_handoff(self) -> bool:
        return self.handoff is not None


# ──────────────────────────────────────────────────────────────
#  Turn result: what one inbound event produced
# ──────────────────────────────────────────────────────────────

class TurnResult(BaseModel):
    outcome: TurnOutcome
    automation_id: Optional[str] = None
    session: Optional[Session] = None
    messages: list[OutboundMessage] = []
    fallback: Optional[FallbackDecision] = None
    config_errors: list[str] = []

    @property
    def fallback_triggered(self) -> bool:
        return self.outcome == TurnOutcome.FALLBACK
