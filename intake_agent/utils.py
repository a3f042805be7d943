# intake_agent/utils.py
import html
import re
from typing import Any, Iterable, Optional

from .models import MATTER_TYPES, Message


def clean_text(t: str) -> str:
    return (t or "").strip()


# -------------------- transcript --------------------

def conversation_text(messages: Iterable[Message]) -> str:
    """Role-tagged transcript, one message per line."""
    return "\n".join(f"{m.role}: {m.content or ''}" for m in messages)


def user_messages(messages: Iterable[Message]) -> list:
    return [m for m in messages if m.role == "user"]


def first_user_message(messages: Iterable[Message]) -> Optional[Message]:
    for m in messages:
        if m.role == "user":
            return m
    return None


_GREETINGS = (
    "hi", "hello", "hey", "howdy", "greetings", "hiya", "yo",
    "good morning", "good afternoon", "good evening",
)
_GREETING_RE = re.compile(r"^\s*(?:" + "|".join(re.escape(g) for g in _GREETINGS) + r")\b", re.I)


def is_greeting(text: str) -> bool:
    return bool(_GREETING_RE.match(text or ""))


# -------------------- contact info --------------------

_EMAIL_RE = re.compile(r"[A-Z0-9._%+\-]+@[A-Z0-9.\-]+\.[A-Z]{2,}", re.I)
_PHONE_RE = re.compile(r"(?<!\d)(?:\+?1[\s.\-]?)?\(?\d{3}\)?[\s.\-]?\d{3}[\s.\-]?\d{4}(?!\d)")

# tool schema patterns
EMAIL_PATTERN = r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$"
PHONE_PATTERN = r"^\+?\(?[1-9][\d\s\-().]{6,18}$"


def extract_email(text: str):
    if not text: return None
    m = _EMAIL_RE.search(text)
    return m.group(0).lower() if m else None


def extract_phone(text: str):
    if not text: return None
    m = _PHONE_RE.search(text)
    if not m: return None
    digits = re.sub(r"\D", "", m.group(0))
    return digits[-10:]


def has_contact_info(messages: Iterable[Message]) -> bool:
    """True once any user message carries an email or phone number."""
    return any(extract_email(m.content) or extract_phone(m.content) for m in user_messages(messages))


_EMPTYISH = {"", "none", "null", "n/a", "na", "tbd", "unknown"}
_PLACEHOLDER_RE = re.compile(r"\[user_(?:phone|email|name)\]", re.I)


def is_placeholder(value: Optional[str]) -> bool:
    if value is None:
        return False
    v = value.strip().lower()
    return v in _EMPTYISH or bool(_PLACEHOLDER_RE.search(v))


# -------------------- matter types --------------------

_MATTER_ALIASES = {
    "family": "Family Law", "divorce": "Family Law", "custody": "Family Law",
    "employment": "Employment Law", "workplace": "Employment Law", "labor": "Employment Law",
    "landlord": "Landlord/Tenant", "tenant": "Landlord/Tenant", "eviction": "Landlord/Tenant",
    "landlord tenant": "Landlord/Tenant", "landlord-tenant": "Landlord/Tenant",
    "tenant rights law": "Landlord/Tenant",
    "personal injury": "Personal Injury", "injury": "Personal Injury", "accident": "Personal Injury",
    "business": "Business Law", "corporate": "Business Law",
    "criminal": "Criminal Law", "dui": "Criminal Law",
    "civil": "Civil Law",
    "contract": "Contract Review",
    "property": "Property Law", "real estate": "Property Law",
    "administrative": "Administrative Law", "government": "Administrative Law",
    "general": "General Consultation", "consultation": "General Consultation",
}


def normalize_matter_type(value: Optional[str]) -> Optional[str]:
    """Map a free-form issue label onto one of MATTER_TYPES, or None."""
    s = clean_text(value or "")
    if not s or s.lower() in _EMPTYISH:
        return None
    for label in MATTER_TYPES:
        if s.lower() == label.lower():
            return label
    key = s.lower().replace(" law", "").strip()
    if key in _MATTER_ALIASES:
        return _MATTER_ALIASES[key]
    for alias, label in _MATTER_ALIASES.items():
        if re.search(rf"\b{re.escape(alias)}\b", s.lower()):
            return label
    return None


# -------------------- sanitizing --------------------

_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_ROLE_LABEL_RE = re.compile(r"^\s*(?:system|user|assistant|prompt|instruct)\s*[:\-|]", re.I | re.M)
_INJECTION_RE = re.compile(r"^\s*(?:ignore\s+(?:all\s+)?previous(?:\s+instructions?)?|forget\s+all|reset\s+instructions?)", re.I | re.M)
_HTML_EXTRA = {"`": "&#96;", "\\": "&#92;"}


def mask_pii(text: str) -> str:
    s = _EMAIL_RE.sub("[email]", text or "")
    return _PHONE_RE.sub("[phone]", s)


def sanitize_prompt_value(value: Optional[str], max_length: int = 1000) -> Optional[str]:
    """Make a transcript-derived value safe to interpolate into system instructions."""
    if not value or not isinstance(value, str):
        return None
    s = _CONTROL_RE.sub("", value)
    s = _ROLE_LABEL_RE.sub("", s)
    s = _INJECTION_RE.sub("", s)
    s = mask_pii(s)
    s = html.escape(s, quote=True).replace("&#x27;", "&#39;")
    for ch, ent in _HTML_EXTRA.items():
        s = s.replace(ch, ent)
    s = s.strip()
    if len(s) > max_length:
        s = s[:max_length] + "..."
    return s or None


_SENSITIVE_KEYS = (
    "name", "email", "phone", "address", "location", "ssn", "social_security",
    "credit_card", "card_number", "account_number", "routing_number",
    "password", "token", "secret", "key", "credential",
    "description", "details", "notes", "comments", "message",
    "opposing_party", "client_info", "personal_info",
)
_SENSITIVE_VALUE_RES = (
    re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$"),
    re.compile(r"^\+?[0-9\s\-()]{7,20}$"),
    re.compile(r"^\d{3}-?\d{2}-?\d{4}$"),
    re.compile(r"^\d{4}[\s\-]?\d{4}[\s\-]?\d{4}[\s\-]?\d{4}$"),
    re.compile(r"^[a-zA-Z0-9]{20,}$"),
)


def _mask(value: Any) -> Any:
    if not isinstance(value, str):
        return "***REDACTED***"
    if "@" in value:
        local, _, domain = value.partition("@")
        if local.strip() and domain.strip() and "@" not in domain:
            local = local.strip()
            return f"{local[:2]}***@{domain.strip()}" if len(local) >= 2 else f"***@{domain.strip()}"
        return "***REDACTED***"
    if len(value) > 4:
        return f"{value[:2]}***{value[-2:]}"
    return "***REDACTED***"


def redact_parameters(obj: Any, depth: int = 0) -> Any:
    """Deep copy of tool parameters with PII masked, for logs and wire events."""
    if depth > 10:
        return "***DEPTH_LIMIT***"
    if isinstance(obj, list):
        return [redact_parameters(v, depth + 1) for v in obj]
    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            lk = str(k).lower()
            sensitive_key = any(s in lk for s in _SENSITIVE_KEYS)
            sensitive_val = isinstance(v, str) and any(r.match(v) for r in _SENSITIVE_VALUE_RES)
            out[k] = _mask(v) if (sensitive_key or sensitive_val) else redact_parameters(v, depth + 1)
        return out
    return obj
