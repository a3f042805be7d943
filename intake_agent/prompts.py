# intake_agent/prompts.py
from typing import Optional, Sequence, Tuple

from .config import DEFAULT_TEAM_NAME
from .models import Attachment, ConversationContext, ConversationState, TeamConfig, ToolCall
from .state_machine import is_sensitive_matter, should_create_matter
from .telemetry import Telemetry, TelemetryEvent
from .tool_parser import render_tool_call
from .utils import sanitize_prompt_value

PROMPTS = {
    "FALLBACK": "I apologize, but I encountered an error processing your request.",
    "REPHRASE": "I had trouble understanding that request. Could you please rephrase it?",
    "ALREADY_HANDLED": (
        "I've already helped you create a matter for your case. A lawyer will contact you within "
        "24 hours to discuss your situation further. Is there anything else I can help you with?"
    ),
    "TOOL_APOLOGY": "I'm sorry, I wasn't able to complete that just now. Could you please try again in a moment?",
    "CONTACT_FORM": "Please fill out the contact form below so a member of our team can reach you.",
    "CONTACT_FORM_REQUIRED": (
        "Before I can create your matter I need your contact details. "
        "Please fill out the contact form so a member of our team can reach you."
    ),
    "PLACEHOLDER_CONTACT": (
        "I need your actual contact information to proceed. "
        "Could you please provide your real phone number and email address?"
    ),
    "MISSING_CONTACT_METHOD": (
        "I need at least one way to contact you to proceed. "
        "Could you provide either your phone number or email address?"
    ),
    "MISSING_ESSENTIALS": (
        "I'm missing some essential information. Could you please provide your name, "
        "contact information, and describe your legal issue?"
    ),
    "INVALID_MATTER_TYPE": (
        "I need to understand your legal situation better. Could you please describe what type of "
        "legal help you need? For example: family law, employment issues, landlord-tenant disputes, "
        "personal injury, business law, or general consultation."
    ),
    "MATTER_CREATED": (
        "Your matter has been created. I'll submit this to our legal team for review. "
        "A lawyer will contact you within 24 hours to discuss your case."
    ),
    "LAWYER_REVIEW": (
        "I've requested a lawyer review for your case due to its urgent nature. "
        "A lawyer will review your case and contact you to discuss further."
    ),
    "DOCUMENT_UNKNOWN": (
        "I couldn't find that document among your uploads. "
        "Could you please try uploading it again?"
    ),
    "DOCUMENT_FAILED": (
        "I'm sorry, I couldn't analyze that document. The file may not be accessible or may not be in "
        "a supported format. Could you please try uploading it again?"
    ),
}

PERSONA = """You are a legal intake specialist for {team_name}. Your primary goal is to empathetically assist users, understand their legal needs, and gather the information needed to create a legal matter.

**Your persona:**
- Empathetic, caring, and professional.
- Focus on understanding the user's situation and making them feel heard.
- Guide the conversation naturally to collect the legal issue, a description and the opposing party.
- Do NOT sound like a robot or a form. Ask one follow-up at a time."""

RULES = (
    "NEVER repeat the same response or question.",
    "ALWAYS maintain an empathetic and supportive tone.",
    "ONLY use the `show_contact_form` tool AFTER you have asked qualifying questions and determined the user is a serious potential client.",
    "NEVER call `create_matter` before `show_contact_form` has collected contact information.",
    "If the user's query is a general inquiry (e.g. \"what services do you offer?\", \"how much does it cost?\"), respond conversationally without extracting personal details or creating a matter.",
    "If the user asks a question that can be answered directly (e.g. \"what is family law?\"), give a concise and helpful answer.",
    "If the user shares something sensitive, acknowledge it with empathy and gently guide them toward the details a lawyer needs.",
    "Do NOT make assumptions about missing information. Always ask the user.",
    "Do NOT ask for contact information directly in conversation. Use the contact form tool instead.",
    "Before creating a matter, confirm the legal issue type with the user.",
    "When you have all required information and the user asks you to create a matter, use the `create_matter` tool immediately.",
    "Never give legal advice or predict outcomes.",
    "Keep responses concise, friendly and in markdown.",
)

STATE_GUIDANCE = {
    ConversationState.INITIAL: "Greet the user warmly and ask how you can help with their legal matter.",
    ConversationState.GATHERING_INFORMATION: "Respond to the user in a friendly way and ask what legal issue brings them here.",
    ConversationState.GENERAL_INQUIRY: "Answer the general question about services or pricing. Do not ask for personal details.",
    ConversationState.COLLECTING_LEGAL_ISSUE: "Ask what kind of legal issue the user is facing.",
    ConversationState.COLLECTING_DETAILS: "Ask for a brief description of what happened and who the other party is.",
    ConversationState.QUALIFYING_LEAD: (
        "Qualify the lead: ask about urgency, timeline, and whether they have consulted other attorneys. "
        "Do not show the contact form yet."
    ),
    ConversationState.SHOWING_CONTACT_FORM: "Confirm the legal issue type, then use the `show_contact_form` tool.",
    ConversationState.READY_TO_CREATE_MATTER: (
        "You have enough information. If the contact form has been filled in, use the `create_matter` tool; "
        "otherwise use the `show_contact_form` tool first."
    ),
    ConversationState.MATTER_CREATED: "The matter is created. Offer further help without creating another matter.",
    ConversationState.MATTER_CREATION_FAILED: "Matter creation failed. Apologize and offer to try again.",
}

# tools offered to the model per state; create_matter stays gated on the contact form
STATE_TOOLS = {
    ConversationState.INITIAL: (),
    ConversationState.GENERAL_INQUIRY: (),
    ConversationState.GATHERING_INFORMATION: ("analyze_document",),
    ConversationState.COLLECTING_LEGAL_ISSUE: (),
    ConversationState.COLLECTING_DETAILS: (),
    ConversationState.QUALIFYING_LEAD: (),
    ConversationState.SHOWING_CONTACT_FORM: ("show_contact_form",),
    ConversationState.READY_TO_CREATE_MATTER: ("show_contact_form", "create_matter"),
    ConversationState.MATTER_CREATION_FAILED: ("show_contact_form", "create_matter"),
    ConversationState.MATTER_CREATED: ("request_lawyer_review", "analyze_document"),
}

_EXAMPLES = (
    ToolCall(name="show_contact_form"),
    ToolCall(name="create_matter", parameters={
        "name": "John Smith",
        "matter_type": "Employment Law",
        "description": "Boss forcing overtime without pay",
        "email": "john@example.com",
        "phone": "555-234-5678",
    }),
    ToolCall(name="request_lawyer_review", parameters={"matter_type": "Criminal Law", "complexity": "High", "urgency": "court date next week"}),
    ToolCall(name="analyze_document", parameters={"file_id": "file-abc123", "analysis_type": "contract"}),
)


def _flag(present: bool, value: Optional[str] = None) -> str:
    if present and value:
        return f"PRESENT ({value})"
    return "PRESENT" if present else "ABSENT"


def build_context_section(state: ConversationState, context: ConversationContext, *,
                          telemetry: Optional[Telemetry] = None, correlation_id: Optional[str] = None,
                          session_id: Optional[str] = None, team_id: Optional[str] = None) -> str:
    raw = {
        "legal_issue_type": context.legal_issue_type,
        "description": context.description,
        "opposing_party": context.opposing_party,
    }
    limits = {"legal_issue_type": 50, "description": 500, "opposing_party": 100}
    clean = {k: sanitize_prompt_value(v, limits[k]) for k, v in raw.items()}

    # a value that sanitizes to nothing was all injection or markup
    emptied = [k for k, v in raw.items() if v and v.strip() and clean[k] is None]
    if emptied and telemetry is not None and correlation_id:
        telemetry.emit(TelemetryEvent.SECURITY_EVENT, correlation_id, session_id=session_id, team_id=team_id,
                       kind="injection_attempt", severity="medium", fields=emptied,
                       operation="build_context_section")

    sensitive = is_sensitive_matter(context.legal_issue_type, context.description)
    lines = [
        f"- Legal Issue: {_flag(bool(clean['legal_issue_type']), clean['legal_issue_type'])}",
        f"- Description: {_flag(bool(clean['description']), clean['description'])}",
        f"- Opposing Party: {_flag(bool(clean['opposing_party']), clean['opposing_party'])}",
        f"- Contact Info: {_flag(context.has_contact_info)}",
        f"- Sensitive Matter: {_flag(sensitive)}",
        f"- General Inquiry: {_flag(context.is_general_inquiry)}",
        f"- Qualified Lead: {_flag(context.is_qualified_lead)}",
        f"- Ready To Create Matter: {_flag(should_create_matter(context))}",
        f"- Current State: {state.value}",
    ]
    return "\n".join(lines)


def build_attachment_section(attachments: Sequence[Attachment]) -> str:
    if not attachments:
        return ""
    lines = ["**UPLOADED FILES:**"]
    for a in attachments:
        name = sanitize_prompt_value(a.name, 100) or "file"
        kind = sanitize_prompt_value(a.type, 50) or "unknown"
        lines.append(f"- {name} ({kind}), file_id: {a.id}")
    lines.append("Use the `analyze_document` tool with the file_id above before answering questions about a file.")
    return "\n".join(lines)


def available_tools(state: ConversationState, context: ConversationContext,
                    attachments: Sequence[Attachment] = ()) -> Tuple[str, ...]:
    tools = list(STATE_TOOLS.get(state, ()))
    if state == ConversationState.QUALIFYING_LEAD and context.is_qualified_lead:
        tools.append("show_contact_form")
    if state == ConversationState.READY_TO_CREATE_MATTER and is_sensitive_matter(context.legal_issue_type,
                                                                               context.description):
        tools.append("request_lawyer_review")
    if attachments and "analyze_document" not in tools:
        tools.append("analyze_document")
    return tuple(tools)


def build_tool_section(tools: Sequence[str]) -> str:
    if not tools:
        return "**TOOLS:** No tools are available right now. Reply conversationally and do not write TOOL_CALL."
    parts = [
        "**TOOL CALL FORMAT:**",
        "Available tools: " + ", ".join(f"`{t}`" for t in tools) + ". Do not use any other tool.",
        "To use a tool, write the tool line followed by a PARAMETERS line with a JSON object, exactly like:",
    ]
    for ex in (e for e in _EXAMPLES if e.name in tools):
        parts.append("")
        parts.append(render_tool_call(ex, multiline=ex.name == "create_matter"))
    parts.append("")
    parts.append("Use at most one tool per response. Never invent contact details or use placeholders such as [user_email].")
    return "\n".join(parts)


def build_system_prompt(state: ConversationState, context: ConversationContext,
                        team_config: Optional[TeamConfig] = None, attachments: Sequence[Attachment] = (), *,
                        telemetry: Optional[Telemetry] = None, correlation_id: Optional[str] = None,
                        session_id: Optional[str] = None) -> str:
    team_name = DEFAULT_TEAM_NAME
    if team_config is not None and team_config.name:
        team_name = sanitize_prompt_value(team_config.name, 100) or DEFAULT_TEAM_NAME
    team_id = team_config.id if team_config is not None else None

    sections = [
        PERSONA.format(team_name=team_name),
        "**CURRENT CONTEXT (for your reference, do not expose this to the user):**\n"
        + build_context_section(state, context, telemetry=telemetry, correlation_id=correlation_id,
                                session_id=session_id, team_id=team_id),
        "**CRITICAL RULES:**\n" + "\n".join(f"- {r}" for r in RULES),
        "**WHAT TO DO NOW:**\n" + STATE_GUIDANCE.get(state, STATE_GUIDANCE[ConversationState.GATHERING_INFORMATION]),
    ]
    if team_config is not None and team_config.available_services:
        services = [s for s in (sanitize_prompt_value(x, 60) for x in team_config.available_services) if s]
        if services:
            sections.append("**SERVICES OFFERED:** " + ", ".join(services))
    if team_config is not None and team_config.require_location:
        sections.append("**LOCATION REQUIRED:** This team requires the client's city and state before a matter can be created.")
    attachment_section = build_attachment_section(attachments)
    if attachment_section:
        sections.append(attachment_section)
    sections.append(build_tool_section(available_tools(state, context, attachments)))
    return "\n\n".join(sections)
