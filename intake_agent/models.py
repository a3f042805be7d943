# intake_agent/models.py
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

MATTER_TYPES = (
    "Family Law", "Employment Law", "Landlord/Tenant", "Personal Injury",
    "Business Law", "Criminal Law", "Civil Law", "Contract Review",
    "Property Law", "Administrative Law", "General Consultation",
)
COMPLEXITY_LEVELS = ("Low", "Medium", "High", "Very High")
ANALYSIS_TYPES = (
    "general", "legal_document", "contract", "government_form",
    "medical_document", "image", "resume",
)


class ConversationState(str, Enum):
    INITIAL = "INITIAL"
    GENERAL_INQUIRY = "GENERAL_INQUIRY"
    COLLECTING_LEGAL_ISSUE = "COLLECTING_LEGAL_ISSUE"
    COLLECTING_DETAILS = "COLLECTING_DETAILS"
    QUALIFYING_LEAD = "QUALIFYING_LEAD"
    SHOWING_CONTACT_FORM = "SHOWING_CONTACT_FORM"
    READY_TO_CREATE_MATTER = "READY_TO_CREATE_MATTER"
    MATTER_CREATED = "MATTER_CREATED"
    MATTER_CREATION_FAILED = "MATTER_CREATION_FAILED"
    GATHERING_INFORMATION = "GATHERING_INFORMATION"


class Message(BaseModel):
    role: Literal["user", "assistant", "system"] = "user"
    content: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Attachment(BaseModel):
    id: str
    name: str = ""
    type: str = ""
    size: int = 0
    url: str = ""


class ConversationContext(BaseModel):
    """Facts derived from the transcript for a single turn (never persisted)."""
    legal_issue_type: Optional[str] = None
    description: Optional[str] = None
    opposing_party: Optional[str] = None

    has_legal_issue: bool = False
    has_contact_info: bool = False
    is_sensitive_matter: bool = False
    is_general_inquiry: bool = False
    should_create_matter: bool = False
    is_qualified_lead: bool = False

    state: ConversationState = ConversationState.INITIAL


class TeamConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    slug: str = ""
    name: str = ""
    available_services: List[str] = Field(default_factory=list)
    require_location: bool = False
    owner_email: Optional[str] = None


class ToolCall(BaseModel):
    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    # PII-masked copy; logs and wire events only
    sanitized_parameters: Dict[str, Any] = Field(default_factory=dict)


class ToolOutcome(BaseModel):
    tool_name: str
    success: bool = True
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    duration_ms: float = 0.0
    allow_retry: bool = False


# -------------------- events --------------------

class ConnectedEvent(BaseModel):
    type: Literal["connected"] = "connected"


class TypingEvent(BaseModel):
    type: Literal["typing"] = "typing"
    text: str = ""


class TextEvent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolCallEvent(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ToolResultEvent(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    name: str
    success: bool
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)


class ToolErrorEvent(BaseModel):
    type: Literal["tool_error"] = "tool_error"
    name: str
    response: str
    allow_retry: bool = True


class FinalEvent(BaseModel):
    type: Literal["final"] = "final"
    response: str


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str
    correlation_id: str


AgentEvent = Union[
    ConnectedEvent, TypingEvent, TextEvent, ToolCallEvent,
    ToolResultEvent, ToolErrorEvent, FinalEvent, ErrorEvent,
]

# events after which nothing else is sent in the turn
TERMINAL_EVENT_TYPES = {"final", "error"}


# -------------------- API --------------------

class AgentRequest(BaseModel):
    messages: List[Message] = Field(default_factory=list)
    team_id: Optional[str] = None
    session_id: Optional[str] = None
    attachments: List[Attachment] = Field(default_factory=list)


class AgentResponse(BaseModel):
    response: str = ""
    state: ConversationState = ConversationState.INITIAL
    correlation_id: str = ""
    events: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
