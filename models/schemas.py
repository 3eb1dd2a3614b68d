"""
Core data models for the flow engine.
These are the universal types shared across all modules.

Field names are snake_case in Python and camelCase on the wire, so a
model dumped with ``by_alias=True`` matches the persisted Flow document
the editor reads and writes.
"""
from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class FlowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"


class ChannelType(str, Enum):
    WHATSAPP_UNOFFICIAL = "whatsapp_unofficial"
    WHATSAPP_OFFICIAL = "whatsapp_official"
    MESSENGER = "messenger"
    INSTAGRAM = "instagram"
    EMAIL = "email"
    WEBCHAT = "webchat"
    SMS = "sms"
    TIKTOK = "tiktok"


class TimeoutUnit(str, Enum):
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


class NodeType(str, Enum):
    TRIGGER = "trigger"

    MESSAGE = "message"
    QUICK_REPLY = "quickreply"
    WHATSAPP_POLL = "whatsappPoll"
    WHATSAPP_INTERACTIVE_BUTTONS = "whatsappInteractiveButtons"
    WHATSAPP_INTERACTIVE_LIST = "whatsappInteractiveList"
    WHATSAPP_CTA_URL = "whatsappCTAURL"
    WHATSAPP_LOCATION_REQUEST = "whatsappLocationRequest"
    WHATSAPP_FLOWS = "whatsappFlows"
    FOLLOW_UP = "followUp"

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"

    CONDITION = "condition"
    WAIT = "wait"
    INPUT = "input"
    ACTION = "action"
    TRANSLATION = "translation"
    CODE_EXECUTION = "codeExecution"
    DATA_CAPTURE = "dataCapture"

    AI_ASSISTANT = "aiAssistant"
    WEBHOOK = "webhook"
    HTTP_REQUEST = "httpRequest"

    SHOPIFY = "shopify"
    WOOCOMMERCE = "woocommerce"

    TYPEBOT = "typebot"
    FLOWISE = "flowise"
    N8N = "n8n"
    MAKE = "make"
    GOOGLE_SHEETS = "googleSheets"
    DOCUMIND = "documind"
    CHAT_PDF = "chatPdf"

    GOOGLE_CALENDAR = "googleCalendar"

    BOT_DISABLE = "botDisable"
    BOT_RESET = "botReset"

    UPDATE_PIPELINE_STAGE = "updatePipelineStage"


class NodeCategory(str, Enum):
    TRIGGER = "trigger"
    MESSAGE = "message"
    MEDIA = "media"
    LOGIC = "logic"
    INTEGRATION = "integration"
    ECOMMERCE = "ecommerce"
    EXTERNAL = "external"
    CALENDAR = "calendar"
    BOT_CONTROL = "bot_control"
    PIPELINE = "pipeline"


NODE_CATEGORIES: dict[NodeType, NodeCategory] = {
    NodeType.TRIGGER: NodeCategory.TRIGGER,
    NodeType.MESSAGE: NodeCategory.MESSAGE,
    NodeType.QUICK_REPLY: NodeCategory.MESSAGE,
    NodeType.WHATSAPP_POLL: NodeCategory.MESSAGE,
    NodeType.WHATSAPP_INTERACTIVE_BUTTONS: NodeCategory.MESSAGE,
    NodeType.WHATSAPP_INTERACTIVE_LIST: NodeCategory.MESSAGE,
    NodeType.WHATSAPP_CTA_URL: NodeCategory.MESSAGE,
    NodeType.WHATSAPP_LOCATION_REQUEST: NodeCategory.MESSAGE,
    NodeType.WHATSAPP_FLOWS: NodeCategory.MESSAGE,
    NodeType.FOLLOW_UP: NodeCategory.MESSAGE,
    NodeType.IMAGE: NodeCategory.MEDIA,
    NodeType.VIDEO: NodeCategory.MEDIA,
    NodeType.AUDIO: NodeCategory.MEDIA,
    NodeType.DOCUMENT: NodeCategory.MEDIA,
    NodeType.CONDITION: NodeCategory.LOGIC,
    NodeType.WAIT: NodeCategory.LOGIC,
    NodeType.INPUT: NodeCategory.LOGIC,
    NodeType.ACTION: NodeCategory.LOGIC,
    NodeType.TRANSLATION: NodeCategory.LOGIC,
    NodeType.CODE_EXECUTION: NodeCategory.LOGIC,
    NodeType.DATA_CAPTURE: NodeCategory.LOGIC,
    NodeType.AI_ASSISTANT: NodeCategory.INTEGRATION,
    NodeType.WEBHOOK: NodeCategory.INTEGRATION,
    NodeType.HTTP_REQUEST: NodeCategory.INTEGRATION,
    NodeType.SHOPIFY: NodeCategory.ECOMMERCE,
    NodeType.WOOCOMMERCE: NodeCategory.ECOMMERCE,
    NodeType.TYPEBOT: NodeCategory.EXTERNAL,
    NodeType.FLOWISE: NodeCategory.EXTERNAL,
    NodeType.N8N: NodeCategory.EXTERNAL,
    NodeType.MAKE: NodeCategory.EXTERNAL,
    NodeType.GOOGLE_SHEETS: NodeCategory.EXTERNAL,
    NodeType.DOCUMIND: NodeCategory.EXTERNAL,
    NodeType.CHAT_PDF: NodeCategory.EXTERNAL,
    NodeType.GOOGLE_CALENDAR: NodeCategory.CALENDAR,
    NodeType.BOT_DISABLE: NodeCategory.BOT_CONTROL,
    NodeType.BOT_RESET: NodeCategory.BOT_CONTROL,
    NodeType.UPDATE_PIPELINE_STAGE: NodeCategory.PIPELINE,
}

# Type names written by older editor builds, mapped onto the closed tag set.
LEGACY_NODE_TYPES: dict[str, NodeType] = {
    "triggerNode": NodeType.TRIGGER,
    "Trigger Node": NodeType.TRIGGER,
    "messageNode": NodeType.MESSAGE,
    "Message Node": NodeType.MESSAGE,
    "quickReply": NodeType.QUICK_REPLY,
    "quickReplyNode": NodeType.QUICK_REPLY,
    "quick_reply": NodeType.QUICK_REPLY,
    "Quick Reply Node": NodeType.QUICK_REPLY,
    "Quick Reply Options": NodeType.QUICK_REPLY,
    "whatsapp_poll": NodeType.WHATSAPP_POLL,
    "whatsapp_interactive_buttons": NodeType.WHATSAPP_INTERACTIVE_BUTTONS,
    "whatsapp_interactive_list": NodeType.WHATSAPP_INTERACTIVE_LIST,
    "whatsapp_cta_url": NodeType.WHATSAPP_CTA_URL,
    "whatsapp_location_request": NodeType.WHATSAPP_LOCATION_REQUEST,
    "whatsapp_flows": NodeType.WHATSAPP_FLOWS,
    "followUpNode": NodeType.FOLLOW_UP,
    "follow_up": NodeType.FOLLOW_UP,
    "followup": NodeType.FOLLOW_UP,
    "imageNode": NodeType.IMAGE,
    "videoNode": NodeType.VIDEO,
    "audioNode": NodeType.AUDIO,
    "documentNode": NodeType.DOCUMENT,
    "conditionNode": NodeType.CONDITION,
    "Condition Node": NodeType.CONDITION,
    "waitNode": NodeType.WAIT,
    "inputNode": NodeType.INPUT,
    "actionNode": NodeType.ACTION,
    "aiAssistantNode": NodeType.AI_ASSISTANT,
    "ai_assistant": NodeType.AI_ASSISTANT,
    "AI Assistant": NodeType.AI_ASSISTANT,
    "webhookNode": NodeType.WEBHOOK,
    "httpRequestNode": NodeType.HTTP_REQUEST,
    "http_request": NodeType.HTTP_REQUEST,
    "codeExecutionNode": NodeType.CODE_EXECUTION,
    "code_execution": NodeType.CODE_EXECUTION,
    "shopifyNode": NodeType.SHOPIFY,
    "woocommerceNode": NodeType.WOOCOMMERCE,
    "typebotNode": NodeType.TYPEBOT,
    "flowiseNode": NodeType.FLOWISE,
    "google_sheets": NodeType.GOOGLE_SHEETS,
    "data_capture": NodeType.DATA_CAPTURE,
    "chat_pdf": NodeType.CHAT_PDF,
    "googleCalendarNode": NodeType.GOOGLE_CALENDAR,
    "google_calendar": NodeType.GOOGLE_CALENDAR,
    "botDisableNode": NodeType.BOT_DISABLE,
    "bot_disable": NodeType.BOT_DISABLE,
    "Agent Handoff": NodeType.BOT_DISABLE,
    "botResetNode": NodeType.BOT_RESET,
    "bot_reset": NodeType.BOT_RESET,
    "updatePipelineStageNode": NodeType.UPDATE_PIPELINE_STAGE,
    "update_pipeline_stage": NodeType.UPDATE_PIPELINE_STAGE,
}

_INPUT_NODE_TYPES = {
    NodeType.INPUT, NodeType.QUICK_REPLY,
    NodeType.WHATSAPP_INTERACTIVE_BUTTONS, NodeType.WHATSAPP_POLL,
}


def normalize_node_type(value: Union[str, NodeType]) -> NodeType:
    """Map a current or legacy node type name onto NodeType. Raises ValueError."""
    if isinstance(value, NodeType):
        return value
    try:
        return NodeType(value)
    except ValueError:
        pass
    if value in LEGACY_NODE_TYPES:
        return LEGACY_NODE_TYPES[value]
    raise ValueError(f"unknown node type '{value}'")


def node_category(node_type: NodeType) -> NodeCategory:
    return NODE_CATEGORIES[node_type]


def is_media_node(node_type: NodeType) -> bool:
    return NODE_CATEGORIES[node_type] == NodeCategory.MEDIA


def requires_user_input(node_type: NodeType) -> bool:
    return node_type in _INPUT_NODE_TYPES


def stops_execution(node_type: NodeType) -> bool:
    return node_type == NodeType.BOT_DISABLE


# ──────────────────────────────────────────────────────────────
#  Keyword — one dynamic output of a keyword-routing node
# ──────────────────────────────────────────────────────────────

KEYWORD_HANDLE_PREFIX = "keyword-"
NO_MATCH_HANDLE = "no-match"

_WHITESPACE = re.compile(r"\s+")


def slugify(value: str) -> str:
    """Lower-case, trim, and turn runs of whitespace into single hyphens."""
    return _WHITESPACE.sub("-", value.strip().lower())


def keyword_handle_id(value: str) -> str:
    return KEYWORD_HANDLE_PREFIX + slugify(value)


class Keyword(CamelModel):
    """
    A keyword owned by one node's ``data.keywords`` list.

    ``handle_id`` is derived from ``value`` once, when the keyword is
    defined, and is what edges reference. Editing ``label`` never changes
    it; only ``with_value`` regenerates it.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    value: str
    case_sensitive: bool = False
    label: str = ""
    handle_id: str = ""

    @model_validator(mode="after")
    def _derive_handle(self) -> "Keyword":
        if not self.handle_id:
            self.handle_id = keyword_handle_id(self.value)
        return self

    def with_value(self, value: str) -> "Keyword":
        return self.model_copy(update={"value": value, "handle_id": keyword_handle_id(value)})


# ──────────────────────────────────────────────────────────────
#  Graph — nodes, edges, flows
# ──────────────────────────────────────────────────────────────

class Position(CamelModel):
    x: float = 0.0
    y: float = 0.0


class Node(CamelModel):
    id: str
    type: NodeType
    position: Position = Field(default_factory=Position)
    data: dict[str, Any] = {}                 # type-specific payload
    width: Optional[float] = None
    height: Optional[float] = None
    selected: bool = False

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> NodeType:
        return normalize_node_type(value)

    @property
    def keywords(self) -> list[Keyword]:
        return [Keyword.model_validate(k) for k in self.data.get("keywords") or []]


class Edge(CamelModel):
    id: str
    source: str
    target: str
    source_handle: Optional[str] = None       # yes/no, keyword-<slug>, no-match, option-<n>
    target_handle: Optional[str] = None
    animated: bool = True
    type: str = "smoothstep"


class Flow(CamelModel):
    id: str = Field(default_factory=lambda: new_id("flow"))
    name: str = ""
    status: FlowStatus = FlowStatus.DRAFT
    version: int = 1
    nodes: list[Node] = []
    edges: list[Edge] = []

    @property
    def is_active(self) -> bool:
        return self.status == FlowStatus.ACTIVE

    def get_node(self, node_id: str) -> Optional[Node]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def trigger_nodes(self) -> list[Node]:
        return [n for n in self.nodes if n.type == NodeType.TRIGGER]


# ──────────────────────────────────────────────────────────────
#  Contacts & messages — evaluation inputs
# ──────────────────────────────────────────────────────────────

class ContactInfo(CamelModel):
    """Contact attributes available to conditions and templates."""
    id: str
    name: str = ""
    phone: str = ""
    email: str = ""
    tags: list[str] = []
    attributes: dict[str, Any] = {}           # custom fields from the CRM


class InboundMessage(CamelModel):
    contact_id: str
    channel_type: str                         # ChannelType value
    channel_id: Optional[str] = None          # specific channel connection, if known
    text: str = ""
    media_type: Optional[str] = None          # image | video | audio | document
    timestamp: datetime = Field(default_factory=_utcnow)

    @field_validator("channel_type", mode="before")
    @classmethod
    def _channel_value(cls, value: Any) -> str:
        return value.value if isinstance(value, ChannelType) else str(value)


class MessageContext(CamelModel):
    """What a condition string is evaluated against."""
    message_text: str = ""
    media_type: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    contact: ContactInfo = Field(default_factory=lambda: ContactInfo(id=""))
    timezone: str = "UTC"                     # the flow's configured timezone

    @classmethod
    def from_message(
        cls,
        message: InboundMessage,
        contact: Optional[ContactInfo] = None,
        tz: str = "UTC",
    ) -> "MessageContext":
        return cls(
            message_text=message.text,
            media_type=message.media_type,
            timestamp=message.timestamp,
            contact=contact or ContactInfo(id=message.contact_id),
            timezone=tz,
        )


# ──────────────────────────────────────────────────────────────
#  Session — sticky routing state per contact × flow
# ──────────────────────────────────────────────────────────────

def session_key(contact_id: str, flow_id: str) -> str:
    return f"{contact_id}:{flow_id}"


class Session(CamelModel):
    contact_id: str
    flow_id: str
    trigger_node_id: str
    channel_type: str
    last_activity_at: datetime
    expires_at: datetime
    timeout_value: float = 30
    timeout_unit: TimeoutUnit = TimeoutUnit.MINUTES
    current_node_id: Optional[str] = None     # node waiting for the contact's reply
    variables: dict[str, Any] = {}            # values captured by input nodes so far

    @property
    def key(self) -> str:
        return session_key(self.contact_id, self.flow_id)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# ──────────────────────────────────────────────────────────────
#  Channel assignments & diagnostics
# ──────────────────────────────────────────────────────────────

class FlowAssignment(CamelModel):
    """Binds a flow to one channel connection."""
    id: str = Field(default_factory=lambda: new_id("assign"))
    flow_id: str
    channel_id: str
    channel_type: Optional[str] = None
    is_active: bool = False


class Diagnostic(CamelModel):
    """A non-fatal problem found while evaluating, rendering or laying out."""
    code: str                                 # invalid_regex | unknown_variable | cycle_broken | ...
    message: str
    severity: str = "warning"                 # info | warning | error
    node_id: Optional[str] = None
    edge_id: Optional[str] = None
