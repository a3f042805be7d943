# intake_agent/extractor.py
import json
import logging
import re
from typing import Any, Dict, Optional, Sequence

from .config import EXTRACTION_MAX_TOKENS
from .errors import ConversationStateError, IntakeError
from .llm import ModelClient
from .models import MATTER_TYPES, ConversationContext, ConversationState, Message
from .state_machine import is_sensitive_matter, should_create_matter
from .utils import clean_text, conversation_text, has_contact_info, normalize_matter_type

logger = logging.getLogger(__name__)

GENERAL_INQUIRY_MIN_LENGTH = 20

GENERAL_INQUIRY_PATTERNS = [
    re.compile(p, re.I) for p in (
        r"services in my area",
        r"pricing",
        r"\bcost",
        r"what.*services",
        r"do you provide",
        r"not sure if you provide",
        r"concerned about.*cost",
        r"tell me about.*pricing",
        r"not sure what kind",
        r"what kind of.*help",
        r"how much (?:do|does|will)",
    )
]

_URGENCY = ("urgent", "immediate", "asap", "emergency", "right now", "as soon as possible")
_TIMELINE = ("timeline", "deadline", "court date", "by next", "within a week", "this week", "hearing")
_PREVIOUS_LAWYER = ("other lawyer", "another lawyer", "previous attorney", "already have a lawyer",
                    "already have an attorney", "consulted")

SYSTEM_PROMPT = (
    "You extract structured facts from a legal intake conversation. "
    "Return a strict JSON object with exactly these keys: "
    "legal_issue_type, description, opposing_party, is_qualified_lead. "
    f"legal_issue_type must be one of: {', '.join(MATTER_TYPES)}; or null when no legal issue is stated. "
    "description is a one or two sentence summary of the user's situation in their own terms, or null. "
    "opposing_party is the name of the other party if mentioned, else null. "
    "is_qualified_lead is true only if the user showed urgency or a concrete timeline and intent to act. "
    "Never include contact details. Use null for unknown."
)


def is_general_inquiry(text: str, legal_issue_type: Optional[str] = None) -> bool:
    if not text or len(text.strip()) < GENERAL_INQUIRY_MIN_LENGTH:
        return True
    if legal_issue_type:
        return False
    return any(p.search(text) for p in GENERAL_INQUIRY_PATTERNS)


def qualification_heuristic(text: str) -> bool:
    s = (text or "").lower()
    if any(k in s for k in _PREVIOUS_LAWYER):
        return False
    return any(k in s for k in _URGENCY) or any(k in s for k in _TIMELINE)


def _parse_json_object(content: str) -> Dict[str, Any]:
    content = clean_text(content)
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        # tolerate prose or code fences around the object
        start, end = content.find("{"), content.rfind("}")
        if start < 0 or end <= start:
            raise
        data = json.loads(content[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("extraction result is not an object")
    return data


def _opt_str(v: Any, limit: int) -> Optional[str]:
    if v is None or isinstance(v, bool):
        return None
    s = clean_text(str(v))
    if not s or s.lower() in {"null", "none", "unknown", "n/a"}:
        return None
    return s[:limit]


class ContextExtractor:
    """Builds a ConversationContext from the transcript: one completion call plus deterministic checks."""

    def __init__(self, model_client: ModelClient, max_tokens: int = EXTRACTION_MAX_TOKENS):
        self.model_client = model_client
        self.max_tokens = max_tokens

    async def extract(self, messages: Sequence[Message]) -> ConversationContext:
        messages = list(messages)
        text = conversation_text(messages)
        contact = has_contact_info(messages)

        user_text = "\n".join(m.content for m in messages if m.role == "user")
        if len(user_text.strip()) < GENERAL_INQUIRY_MIN_LENGTH:
            return ConversationContext(has_contact_info=contact, is_general_inquiry=True,
                                       state=ConversationState.GENERAL_INQUIRY)

        data = await self._complete(text)

        legal_issue_type = normalize_matter_type(_opt_str(data.get("legal_issue_type"), 50))
        description = _opt_str(data.get("description"), 1000)
        opposing_party = _opt_str(data.get("opposing_party"), 100)

        model_qualified = data.get("is_qualified_lead") is True
        qualified = bool(legal_issue_type) and (model_qualified or qualification_heuristic(user_text))

        context = ConversationContext(
            legal_issue_type=legal_issue_type,
            description=description,
            opposing_party=opposing_party,
            has_legal_issue=bool(legal_issue_type),
            has_contact_info=contact,
            is_sensitive_matter=is_sensitive_matter(legal_issue_type, description),
            is_general_inquiry=is_general_inquiry(user_text, legal_issue_type),
            is_qualified_lead=qualified,
        )
        return context.model_copy(update={"should_create_matter": should_create_matter(context)})

    async def _complete(self, text: str) -> Dict[str, Any]:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": f"Conversation:\n{text}"},
        ]
        try:
            result = await self.model_client.complete(
                messages, max_tokens=self.max_tokens, temperature=0.0,
                response_format={"type": "json_object"},
            )
            return _parse_json_object((result or {}).get("response") or "")
        except IntakeError as e:
            raise ConversationStateError(f"context extraction failed: {e.message}",
                                         context={"stage": "extract"}, original_error=e)
        except (ValueError, TypeError, AttributeError) as e:
            # json.JSONDecodeError is a ValueError
            raise ConversationStateError(f"context extraction returned unusable output: {e}",
                                         context={"stage": "extract"}, original_error=e)
        except Exception as e:
            logger.exception("Model collaborator raised during extraction")
            raise ConversationStateError(f"context extraction failed: {type(e).__name__}",
                                         context={"stage": "extract"}, original_error=e)
