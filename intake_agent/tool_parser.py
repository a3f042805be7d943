# intake_agent/tool_parser.py
"""
Adapter for the free-text tool grammar the model emits:

    TOOL_CALL: create_matter
    PARAMETERS: {"matter_type": "Family Law", ...}

`parse` never raises. It returns an empty ParseResult for plain prose, a
ParseResult with a validated ToolCall, or a ParseResult carrying a typed error.
"""

import json
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import IntakeError, ToolCallParseError, ValidationError
from .models import ANALYSIS_TYPES, COMPLEXITY_LEVELS, MATTER_TYPES, ToolCall
from .utils import EMAIL_PATTERN, PHONE_PATTERN, redact_parameters

MatterType = Literal[MATTER_TYPES]


class _ToolParams(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class ShowContactFormParams(_ToolParams):
    pass


class CreateMatterParams(_ToolParams):
    matter_type: MatterType
    description: str = Field(min_length=1, max_length=1000)
    name: str = Field(min_length=2, max_length=100)
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    location: Optional[str] = Field(default=None, max_length=100)
    opposing_party: Optional[str] = Field(default=None, max_length=100)


class RequestLawyerReviewParams(_ToolParams):
    matter_type: MatterType
    complexity: Literal[COMPLEXITY_LEVELS] = "Medium"
    urgency: Optional[str] = Field(default=None, max_length=50)


class AnalyzeDocumentParams(_ToolParams):
    file_id: str = Field(min_length=1, max_length=50, pattern=r"^[A-Za-z0-9\-_]+$")
    analysis_type: Literal[ANALYSIS_TYPES] = "general"
    specific_question: Optional[str] = Field(default=None, min_length=10, max_length=500)


TOOL_SCHEMAS: "MappingProxyType[str, Type[_ToolParams]]" = MappingProxyType({
    "show_contact_form": ShowContactFormParams,
    "create_matter": CreateMatterParams,
    "request_lawyer_review": RequestLawyerReviewParams,
    "analyze_document": AnalyzeDocumentParams,
})
TOOL_NAMES = frozenset(TOOL_SCHEMAS)

_ANCHOR_RE = re.compile(r"TOOL_CALL:\s*([A-Za-z_][A-Za-z0-9_]*)", re.I)
_PARAMS_RE = re.compile(r"PARAMETERS:", re.I)
_decoder = json.JSONDecoder()


@dataclass(frozen=True)
class ParseResult:
    tool_call: Optional[ToolCall] = None
    error: Optional[IntakeError] = None

    @property
    def is_tool_call(self) -> bool:
        return self.tool_call is not None

    @property
    def is_error(self) -> bool:
        return self.error is not None


def has_sentinel(text: str) -> bool:
    return bool(_ANCHOR_RE.search(text or ""))


def _decode_parameters(segment: str, tool_name: str) -> Dict[str, Any]:
    m = _PARAMS_RE.search(segment)
    if m is None:
        return {}
    rest = segment[m.end():]
    brace = rest.find("{")
    if brace < 0:
        raise ToolCallParseError("PARAMETERS block has no JSON object", context={"tool": tool_name})
    try:
        value, _ = _decoder.raw_decode(rest, brace)
    except json.JSONDecodeError as e:
        raise ToolCallParseError(f"PARAMETERS is not valid JSON: {e.msg}",
                                 context={"tool": tool_name, "position": e.pos}, original_error=e)
    if not isinstance(value, dict):
        raise ToolCallParseError("PARAMETERS must be a JSON object", context={"tool": tool_name})
    return value


_FIELD_LABELS = {
    "matter_type": "type of legal matter",
    "name": "full name",
    "email": "email address",
    "phone": "phone number",
    "opposing_party": "opposing party",
    "file_id": "document reference",
    "specific_question": "question",
}


def _field_message(fields) -> str:
    labels = [_FIELD_LABELS.get(f, f.replace("_", " ")) for f in fields]
    if not labels:
        return "Some of the details I tried to use were not valid. Could you please confirm them?"
    pronoun = "them" if len(labels) > 1 else "it"
    return f"I couldn't use the {' and '.join(labels)} as provided. Could you please double-check {pronoun}?"


def _validate(tool_name: str, params: Dict[str, Any]) -> ToolCall:
    schema = TOOL_SCHEMAS.get(tool_name)
    if schema is None:
        raise ValidationError(f"Unknown tool: {tool_name}", context={"tool": tool_name})
    try:
        model = schema.model_validate(params)
    except PydanticValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ValidationError(_field_message(fields),
                              context={"tool": tool_name, "fields": fields}, original_error=e)
    clean = model.model_dump(exclude_none=True)
    return ToolCall(name=tool_name, parameters=clean, sanitized_parameters=redact_parameters(clean))


def parse(text: str) -> ParseResult:
    if not has_sentinel(text):
        return ParseResult()
    anchors = list(_ANCHOR_RE.finditer(text))

    first_error: Optional[IntakeError] = None
    for i, anchor in enumerate(anchors):
        tool_name = anchor.group(1).lower()
        end = anchors[i + 1].start() if i + 1 < len(anchors) else len(text)
        segment = text[anchor.end():end]
        try:
            params = _decode_parameters(segment, tool_name)
            return ParseResult(tool_call=_validate(tool_name, params))
        except IntakeError as e:
            if first_error is None:
                first_error = e
    return ParseResult(error=first_error)


def render_tool_call(tool_call: ToolCall, multiline: bool = False) -> str:
    params = json.dumps(tool_call.parameters, indent=2 if multiline else None, ensure_ascii=False)
    return f"TOOL_CALL: {tool_call.name}\nPARAMETERS: {params}"

