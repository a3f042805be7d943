# intake_agent/dispatcher.py
import asyncio
import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Sequence

from .config import TOOL_TIMEOUT
from .errors import ExternalServiceError, IntakeError, Result, ValidationError
from .models import Attachment, TeamConfig, ToolOutcome
from .prompts import PROMPTS
from .tools import ToolServices
from .utils import clean_text, is_placeholder, normalize_matter_type, redact_parameters

logger = logging.getLogger(__name__)

# tools whose failure leaves the turn open for another attempt
RETRYABLE_TOOLS = frozenset({"create_matter"})


class SessionStore(Protocol):
    def mark_contact_form_shown(self, session_id: str, team_id: Optional[str] = None) -> None: ...
    def contact_form_shown(self, session_id: Optional[str]) -> bool: ...


@dataclass(frozen=True)
class ToolContext:
    correlation_id: str
    session_store: SessionStore
    session_id: Optional[str] = None
    team_id: Optional[str] = None
    team_config: Optional[TeamConfig] = None
    attachments: Sequence[Attachment] = field(default_factory=tuple)


Handler = Callable[[Dict[str, Any], ToolContext], Awaitable[ToolOutcome]]


def _trimmed(params: Dict[str, Any], key: str) -> Optional[str]:
    v = params.get(key)
    if v is None:
        return None
    s = clean_text(str(v))
    return s or None


def matter_summary(params: Dict[str, Any]) -> str:
    contact = ", ".join(p for p in (params.get("phone"), params.get("email"), params.get("location")) if p)
    lines = [
        "Perfect! I have all the information I need. Here's a summary of your matter:",
        "",
        "**Client Information:**",
        f"- Name: {params['name']}",
        f"- Contact: {contact or 'Not provided'}",
    ]
    if params.get("opposing_party"):
        lines.append(f"- Opposing Party: {params['opposing_party']}")
    lines += [
        "",
        "**Matter Details:**",
        f"- Type: {params['matter_type']}",
        f"- Description: {params['description']}",
        "",
        PROMPTS["MATTER_CREATED"],
    ]
    return "\n".join(lines)


def _suggested_matter_type(analysis_type: str, summary: str) -> str:
    s = (summary or "").lower()
    if analysis_type == "contract" or "contract" in s:
        return "Contract Review"
    if analysis_type == "medical_document" or "medical" in s:
        return "Personal Injury"
    if analysis_type == "government_form" or "form" in s:
        return "Administrative Law"
    if analysis_type == "image" and ("accident" in s or "injury" in s):
        return "Personal Injury"
    if analysis_type == "image" and "property" in s:
        return "Property Law"
    return "General Consultation"


def document_summary(analysis: Dict[str, Any], suggested: str) -> str:
    entities = analysis.get("entities") or {}
    parts = ["I've analyzed your document and here's what I found:", ""]
    if analysis.get("summary"):
        parts += [f"**Document Analysis:** {analysis['summary']}", ""]
    if entities.get("people"):
        parts.append(f"**Parties Involved:** {', '.join(entities['people'])}")
    if entities.get("orgs"):
        parts.append(f"**Organizations:** {', '.join(entities['orgs'])}")
    if entities.get("dates"):
        parts.append(f"**Important Dates:** {', '.join(entities['dates'])}")
    facts = (analysis.get("key_facts") or [])[:3]
    if facts:
        parts.append("**Key Facts:**")
        parts += [f"- {f}" for f in facts]
    parts += [
        "",
        f"**Suggested Legal Matter Type:** {suggested}",
        "",
        f"Would you like me to create a legal matter for this {suggested.lower()} case? "
        "I'll need your contact information to get started.",
    ]
    return "\n".join(parts)


def build_tool_registry(services: ToolServices) -> Mapping[str, Handler]:
    """Immutable name -> handler mapping for the four intake tools."""

    async def show_contact_form(params: Dict[str, Any], ctx: ToolContext) -> ToolOutcome:
        descriptor = (await services.show_contact_form(ctx.team_config)).unwrap()
        if ctx.session_id:
            ctx.session_store.mark_contact_form_shown(ctx.session_id, ctx.team_id)
        return ToolOutcome(tool_name="show_contact_form", message=PROMPTS["CONTACT_FORM"],
                           data={"contact_form": descriptor})

    async def create_matter(params: Dict[str, Any], ctx: ToolContext) -> ToolOutcome:
        clean = {k: _trimmed(params, k) for k in
                 ("matter_type", "description", "name", "email", "phone", "location", "opposing_party")}
        if not (clean["matter_type"] and clean["description"] and clean["name"]):
            raise ValidationError(PROMPTS["MISSING_ESSENTIALS"], context={"tool": "create_matter"})
        matter_type = normalize_matter_type(clean["matter_type"])
        if matter_type is None:
            raise ValidationError(PROMPTS["INVALID_MATTER_TYPE"], context={"tool": "create_matter"})
        clean["matter_type"] = matter_type

        if is_placeholder(clean["email"]) or is_placeholder(clean["phone"]):
            raise ValidationError(PROMPTS["PLACEHOLDER_CONTACT"], context={"tool": "create_matter"})
        if not (clean["email"] or clean["phone"]):
            raise ValidationError(PROMPTS["MISSING_CONTACT_METHOD"], context={"tool": "create_matter"})
        if ctx.team_config is not None and ctx.team_config.require_location and not clean["location"]:
            raise ValidationError("Could you please provide your city and state so we can confirm we serve your area?",
                                  context={"tool": "create_matter", "field": "location"})

        if not ctx.session_store.contact_form_shown(ctx.session_id):
            raise ValidationError(PROMPTS["CONTACT_FORM_REQUIRED"],
                                  context={"tool": "create_matter", "gate": "contact_form"})

        matter = {k: v for k, v in clean.items() if v is not None}
        data = (await services.create_matter(matter, session_id=ctx.session_id, team_id=ctx.team_id,
                                             correlation_id=ctx.correlation_id)).unwrap()
        return ToolOutcome(tool_name="create_matter", message=matter_summary(matter),
                           data={"matter": data or {}, "matter_type": matter_type})

    async def request_lawyer_review(params: Dict[str, Any], ctx: ToolContext) -> ToolOutcome:
        matter_type = normalize_matter_type(_trimmed(params, "matter_type"))
        if matter_type is None:
            raise ValidationError(PROMPTS["INVALID_MATTER_TYPE"], context={"tool": "request_lawyer_review"})
        review = {**params, "matter_type": matter_type}
        data = (await services.request_lawyer_review(review, team_config=ctx.team_config,
                                                     correlation_id=ctx.correlation_id)).unwrap()
        return ToolOutcome(tool_name="request_lawyer_review", message=PROMPTS["LAWYER_REVIEW"],
                           data={"review": data or {}, "matter_type": matter_type})

    async def analyze_document(params: Dict[str, Any], ctx: ToolContext) -> ToolOutcome:
        file_id = _trimmed(params, "file_id")
        if ctx.attachments and file_id not in {a.id for a in ctx.attachments}:
            raise ValidationError(PROMPTS["DOCUMENT_UNKNOWN"], context={"tool": "analyze_document"})
        analysis_type = params.get("analysis_type") or "general"
        analysis = (await services.analyze_document(file_id, analysis_type, params.get("specific_question"),
                                                    correlation_id=ctx.correlation_id)).unwrap() or {}
        if not analysis or analysis.get("confidence") == 0:
            raise ValidationError(analysis.get("summary") or PROMPTS["DOCUMENT_FAILED"],
                                  context={"tool": "analyze_document"})
        suggested = _suggested_matter_type(analysis_type, analysis.get("summary") or "")
        return ToolOutcome(tool_name="analyze_document", message=document_summary(analysis, suggested),
                           data={**analysis, "documentType": analysis_type, "suggestedMatterType": suggested})

    return MappingProxyType({
        "show_contact_form": show_contact_form,
        "create_matter": create_matter,
        "request_lawyer_review": request_lawyer_review,
        "analyze_document": analyze_document,
    })


class ToolDispatcher:
    def __init__(self, registry: Mapping[str, Handler], session_store: SessionStore, timeout: float = TOOL_TIMEOUT):
        self.registry = registry
        self.session_store = session_store
        self.timeout = timeout

    async def dispatch(self, tool_name: str, parameters: Dict[str, Any], correlation_id: str, *,
                       session_id: Optional[str] = None, team_id: Optional[str] = None,
                       team_config: Optional[TeamConfig] = None,
                       attachments: Sequence[Attachment] = ()) -> Result[ToolOutcome]:
        """
        Run one tool handler. Never raises: every failure is a Result whose error
        context carries `allow_retry` and `duration_ms`. Handlers are not retried.
        """
        allow_retry = tool_name in RETRYABLE_TOOLS
        handler = self.registry.get(tool_name)
        if handler is None:
            err = ValidationError(f"Unknown tool: {tool_name}", context={"tool": tool_name, "allow_retry": False},
                                  correlation_id=correlation_id)
            return Result.fail(err)

        ctx = ToolContext(correlation_id=correlation_id, session_store=self.session_store, session_id=session_id,
                          team_id=team_id, team_config=team_config, attachments=tuple(attachments))
        logger.info("Dispatching %s (correlation_id=%s) params=%s", tool_name, correlation_id,
                    redact_parameters(parameters))
        start = time.perf_counter()
        try:
            outcome = await asyncio.wait_for(handler(dict(parameters), ctx), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            error: IntakeError = ExternalServiceError(tool_name, f"timed out after {self.timeout}s",
                                                      correlation_id=correlation_id, original_error=e)
        except IntakeError as e:
            error = e.with_correlation(correlation_id)
        except Exception as e:
            logger.exception("Tool %s raised (correlation_id=%s)", tool_name, correlation_id)
            error = ExternalServiceError(tool_name, str(e) or type(e).__name__,
                                         correlation_id=correlation_id, original_error=e)
        else:
            duration_ms = (time.perf_counter() - start) * 1000
            return Result.ok(outcome.model_copy(update={"duration_ms": duration_ms, "allow_retry": allow_retry}))

        duration_ms = (time.perf_counter() - start) * 1000
        error.context.update({"tool": tool_name, "allow_retry": allow_retry, "duration_ms": duration_ms})
        logger.warning("Tool %s failed in %.0fms: %s", tool_name, duration_ms, error)
        return Result.fail(error)
