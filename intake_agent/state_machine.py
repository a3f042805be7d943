# intake_agent/state_machine.py
"""Conversation state derivation for legal intake.

The state is a pure function of the transcript and the context extracted from
it. `should_create_matter` and `is_sensitive_matter` are the single source of
truth for readiness; the prompt composer imports them from here.
"""

import logging
from typing import TYPE_CHECKING, Optional, Sequence, Tuple

from .errors import IntakeError
from .models import ConversationContext, ConversationState, Message
from .utils import clean_text, first_user_message, has_contact_info, is_greeting

if TYPE_CHECKING:
    from .extractor import ContextExtractor

logger = logging.getLogger(__name__)

QUALIFYING_DESCRIPTION_LENGTH = 20

SENSITIVE_KEYWORDS = (
    "criminal", "arrest", "jail", "prison", "charges", "court date",
    "accident", "injury", "hospital", "medical", "death", "fatal",
    "domestic violence", "abuse", "harassment", "threat", "danger",
    "emergency", "urgent", "immediate", "asap", "right now",
)


def is_sensitive_matter(legal_issue_type: Optional[str], description: Optional[str]) -> bool:
    if not legal_issue_type and not description:
        return False
    text = f"{legal_issue_type or ''} {description or ''}".lower()
    return any(k in text for k in SENSITIVE_KEYWORDS)


def should_create_matter(context: ConversationContext) -> bool:
    """Issue type + description, plus either contact info or a sensitive matter."""
    if not (context.legal_issue_type and context.description):
        return False
    if is_sensitive_matter(context.legal_issue_type, context.description):
        return True
    return context.has_contact_info


def default_context(messages: Sequence[Message]) -> ConversationContext:
    """Minimal context used when extraction fails: safest branch, no side effects."""
    return ConversationContext(
        has_contact_info=has_contact_info(messages),
        is_general_inquiry=True,
        state=ConversationState.GATHERING_INFORMATION,
    )


def decide_state(context: ConversationContext, messages: Sequence[Message]) -> ConversationState:
    if not any(clean_text(m.content) for m in messages):
        return ConversationState.INITIAL

    first = first_user_message(messages)
    if first is not None and is_greeting(first.content):
        return ConversationState.GATHERING_INFORMATION

    if context.is_general_inquiry:
        return ConversationState.GENERAL_INQUIRY
    if not context.legal_issue_type:
        return ConversationState.COLLECTING_LEGAL_ISSUE
    if not context.description:
        return ConversationState.COLLECTING_DETAILS
    if should_create_matter(context):
        return ConversationState.READY_TO_CREATE_MATTER
    if not context.is_qualified_lead and len(context.description) > QUALIFYING_DESCRIPTION_LENGTH:
        return ConversationState.QUALIFYING_LEAD
    return ConversationState.SHOWING_CONTACT_FORM


class StateMachine:
    def __init__(self, extractor: "ContextExtractor"):
        self.extractor = extractor

    async def evaluate(self, messages: Sequence[Message]) -> Tuple[ConversationState, ConversationContext]:
        messages = list(messages)
        if not any(clean_text(m.content) for m in messages):
            return ConversationState.INITIAL, ConversationContext(state=ConversationState.INITIAL)

        # cheap checks first: a greeting never costs an extraction call
        first = first_user_message(messages)
        if first is not None and is_greeting(first.content):
            ctx = ConversationContext(
                has_contact_info=has_contact_info(messages),
                state=ConversationState.GATHERING_INFORMATION,
            )
            return ctx.state, ctx

        try:
            context = await self.extractor.extract(messages)
        except IntakeError as e:
            logger.warning("Context extraction failed, gathering information instead: %s", e)
            ctx = default_context(messages)
            return ctx.state, ctx

        state = decide_state(context, messages)
        return state, context.model_copy(update={"state": state})

    async def get_current_state(self, messages: Sequence[Message]) -> ConversationState:
        state, _ = await self.evaluate(messages)
        return state
