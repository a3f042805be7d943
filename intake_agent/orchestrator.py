# intake_agent/orchestrator.py
"""
One intake turn, end to end.

The transcript is the only conversation state: every turn re-derives context,
state and prompt from it, calls the model once (with retries), and either
streams prose or dispatches the single tool call the model asked for. Events
are collected into the AgentResponse and, in streaming mode, written to an
EventChannel as they happen.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .config import (
    MODEL_MAX_TOKENS, MODEL_TEMPERATURE, MIN_RESPONSE_LENGTH, STREAM_CHUNK_DELAY, STREAM_CHUNK_SIZE,
)
from .dispatcher import RETRYABLE_TOOLS, ToolDispatcher
from .errors import AIServiceError, ExternalServiceError, IntakeError, ToolCallParseError, capture
from .extractor import ContextExtractor
from .llm import ModelClient
from .models import (
    AgentResponse, Attachment, ConnectedEvent, ConversationState, ErrorEvent, FinalEvent, Message,
    TextEvent, ToolCallEvent, ToolErrorEvent, ToolResultEvent, TypingEvent,
)
from .prompts import PROMPTS, build_system_prompt
from .retry import RetryPolicy, with_retry
from .state_machine import StateMachine
from .streaming import EventChannel, chunk_text, event_dict
from .team_client import TeamClient
from .telemetry import Telemetry, TelemetryEvent, new_correlation_id
from .tool_parser import TOOL_NAMES, parse

logger = logging.getLogger(__name__)

# opening sentences of the canned success and already-handled replies
COMPLETION_MARKERS = tuple(PROMPTS[key].split(". ")[0].lower() for key in ("MATTER_CREATED", "ALREADY_HANDLED"))


def _rejected_tool(error: IntakeError) -> bool:
    return not isinstance(error, ToolCallParseError) and error.context.get("tool") in TOOL_NAMES


def matter_already_created(messages: Sequence[Message]) -> bool:
    """True when an assistant turn already reports a successful create_matter."""
    for m in messages:
        if m.role != "assistant":
            continue
        meta = m.metadata or {}
        if meta.get("tool_name") == "create_matter" and meta.get("success", True) is not False:
            return True
        content = (m.content or "").lower()
        if any(marker in content for marker in COMPLETION_MARKERS):
            return True
    return False


class _Turn:
    def __init__(self, correlation_id: str, output: Optional[EventChannel]):
        self.correlation_id = correlation_id
        self.output = output
        self.events: List[Dict[str, Any]] = []

    async def emit(self, event) -> bool:
        self.events.append(event_dict(event))
        if self.output is None:
            return True
        return await self.output.send(event)

    @property
    def disconnected(self) -> bool:
        return self.output is not None and self.output.closed


class IntakeOrchestrator:
    def __init__(
        self,
        model_client: ModelClient,
        dispatcher: ToolDispatcher,
        team_client: Optional[TeamClient] = None,
        telemetry: Optional[Telemetry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        *,
        extractor: Optional[ContextExtractor] = None,
        max_tokens: int = MODEL_MAX_TOKENS,
        temperature: float = MODEL_TEMPERATURE,
        chunk_size: int = STREAM_CHUNK_SIZE,
        chunk_delay: float = STREAM_CHUNK_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.model_client = model_client
        self.dispatcher = dispatcher
        self.team_client = team_client or TeamClient()
        self.telemetry = telemetry or Telemetry()
        self.retry_policy = retry_policy or RetryPolicy()
        self.state_machine = StateMachine(extractor or ContextExtractor(model_client))
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self.sleep = sleep

    async def run(
        self,
        messages: Sequence[Message],
        team_id: Optional[str] = None,
        session_id: Optional[str] = None,
        attachments: Sequence[Attachment] = (),
        output: Optional[EventChannel] = None,
    ) -> AgentResponse:
        cid = new_correlation_id()
        turn = _Turn(cid, output)
        started = time.perf_counter()
        messages = list(messages)
        tags = {"session_id": session_id, "team_id": team_id}

        self.telemetry.emit(TelemetryEvent.TURN_START, cid, **tags, message_count=len(messages),
                            attachment_count=len(attachments))
        await turn.emit(ConnectedEvent())

        response, state, metadata = await self._run_turn(turn, messages, team_id, session_id, attachments)

        if output is not None:
            if metadata.get("channel_open"):
                output.end_stream()
            else:
                output.close()

        duration_ms = (time.perf_counter() - started) * 1000
        self.telemetry.emit(TelemetryEvent.TURN_END, cid, **tags, state=state.value,
                            duration_ms=round(duration_ms, 1), event_count=len(turn.events))
        return AgentResponse(response=response, state=state, correlation_id=cid, events=turn.events,
                             metadata={**metadata, "duration_ms": round(duration_ms, 1)})

    async def _run_turn(self, turn: _Turn, messages: List[Message], team_id: Optional[str],
                        session_id: Optional[str], attachments: Sequence[Attachment]):
        cid = turn.correlation_id
        tags = {"session_id": session_id, "team_id": team_id}

        team_config = None
        if team_id:
            result = await capture(lambda: self.team_client.get_team(team_id), context={"service": "teams"},
                                   correlation_id=cid, error_type=ExternalServiceError)
            if result.success:
                team_config = result.data
            else:
                logger.warning("Team config unavailable for %s, continuing without it: %s", team_id, result.error)

        if matter_already_created(messages):
            await turn.emit(FinalEvent(response=PROMPTS["ALREADY_HANDLED"]))
            return PROMPTS["ALREADY_HANDLED"], ConversationState.MATTER_CREATED, {"short_circuit": True}

        state, context = await self.state_machine.evaluate(messages)
        self.telemetry.emit(TelemetryEvent.STATE, cid, **tags, state=state.value,
                            has_legal_issue=context.has_legal_issue, has_contact_info=context.has_contact_info,
                            is_sensitive_matter=context.is_sensitive_matter,
                            should_create_matter=context.should_create_matter)

        system_prompt = build_system_prompt(state, context, team_config, attachments, telemetry=self.telemetry,
                                            correlation_id=cid, session_id=session_id)
        model_messages = [{"role": "system", "content": system_prompt}]
        model_messages += [{"role": m.role, "content": m.content} for m in messages if m.role != "system"]

        await turn.emit(TypingEvent(text="Thinking..."))
        self.telemetry.emit(TelemetryEvent.MODEL_CALL, cid, **tags, state=state.value,
                            prompt_length=len(system_prompt))
        try:
            result = await with_retry(
                lambda: self.model_client.complete(model_messages, self.max_tokens, self.temperature),
                self.retry_policy, operation_name="model_call", sleep=self.sleep,
            )
        except IntakeError as e:
            return await self._fail(turn, e, state, tags)
        except Exception as e:
            logger.exception("Unexpected model failure (correlation_id=%s)", cid)
            return await self._fail(turn, AIServiceError(str(e) or type(e).__name__, retryable=False,
                                                         original_error=e), state, tags)

        text = ((result or {}).get("response") or "").strip()
        self.telemetry.emit(TelemetryEvent.MODEL_RESPONSE, cid, **tags, response_length=len(text))
        if len(text) < MIN_RESPONSE_LENGTH:
            logger.warning("Model returned %d chars, using fallback (correlation_id=%s)", len(text), cid)
            await turn.emit(FinalEvent(response=PROMPTS["FALLBACK"]))
            return PROMPTS["FALLBACK"], state, {"fallback": True}

        parsed = parse(text)
        if parsed.is_error and _rejected_tool(parsed.error):
            return await self._reject(turn, parsed.error, state, session_id, team_id)
        if parsed.is_error:
            err = parsed.error.with_correlation(cid)
            self.telemetry.emit(TelemetryEvent.ERROR, cid, **tags, error=err.to_dict())
            await turn.emit(ErrorEvent(message=PROMPTS["REPHRASE"], correlation_id=cid))
            return PROMPTS["REPHRASE"], state, {"parse_error": err.error_code}

        if parsed.is_tool_call:
            return await self._dispatch(turn, parsed.tool_call, state, team_config, session_id, team_id, attachments)

        for chunk in chunk_text(text, self.chunk_size):
            if not await turn.emit(TextEvent(text=chunk)):
                break
            if turn.output is not None and self.chunk_delay:
                await self.sleep(self.chunk_delay)
        await turn.emit(FinalEvent(response=text))
        return text, state, {}

    async def _dispatch(self, turn: _Turn, tool_call, state: ConversationState, team_config,
                        session_id: Optional[str], team_id: Optional[str], attachments: Sequence[Attachment]):
        cid = turn.correlation_id
        tags = {"session_id": session_id, "team_id": team_id}

        await turn.emit(TypingEvent(text="Working on it..."))
        await turn.emit(ToolCallEvent(name=tool_call.name, parameters=tool_call.sanitized_parameters))
        self.telemetry.tool_call(cid, tool_call.name, tool_call.parameters, **tags)

        result = await self.dispatcher.dispatch(tool_call.name, tool_call.parameters, cid,
                                                session_id=session_id, team_id=team_id,
                                                team_config=team_config, attachments=attachments)
        meta: Dict[str, Any] = {"tool_name": tool_call.name, "success": result.success}

        if result.success:
            outcome = result.data
            self.telemetry.emit(TelemetryEvent.TOOL_RESULT, cid, **tags, tool=tool_call.name, success=True,
                                duration_ms=round(outcome.duration_ms, 1))
            await turn.emit(ToolResultEvent(name=tool_call.name, success=True, message=outcome.message,
                                            data=outcome.data))
            await turn.emit(FinalEvent(response=outcome.message))
            if tool_call.name == "create_matter":
                state = ConversationState.MATTER_CREATED
            elif tool_call.name == "show_contact_form":
                state = ConversationState.SHOWING_CONTACT_FORM
            return outcome.message, state, meta

        return await self._tool_failed(turn, tool_call.name, result.error, state, tags)

    async def _reject(self, turn: _Turn, error: IntakeError, state: ConversationState,
                      session_id: Optional[str], team_id: Optional[str]):
        """A known tool whose parameters failed the schema is a failed tool call, not unreadable output."""
        tool_name = error.context["tool"]
        error.with_correlation(turn.correlation_id)
        error.context["allow_retry"] = tool_name in RETRYABLE_TOOLS
        logger.info("Rejected %s parameters: %s (correlation_id=%s)", tool_name,
                    error.context.get("fields"), turn.correlation_id)
        await turn.emit(TypingEvent(text="Working on it..."))
        return await self._tool_failed(turn, tool_name, error, state, {"session_id": session_id, "team_id": team_id})

    async def _tool_failed(self, turn: _Turn, tool_name: str, error: IntakeError, state: ConversationState,
                           tags: Dict[str, Any]):
        allow_retry = bool(error.context.get("allow_retry"))
        message = error.to_user_response()
        meta: Dict[str, Any] = {"tool_name": tool_name, "success": False}
        self.telemetry.emit(TelemetryEvent.TOOL_RESULT, turn.correlation_id, **tags, tool=tool_name, success=False,
                            error_code=error.error_code, duration_ms=round(error.context.get("duration_ms", 0.0), 1))
        await turn.emit(ToolResultEvent(name=tool_name, success=False, message=message))

        if allow_retry:
            await turn.emit(ToolErrorEvent(name=tool_name, response=message, allow_retry=True))
            return message, ConversationState.MATTER_CREATION_FAILED, {**meta, "allow_retry": True,
                                                                       "channel_open": True}

        await turn.emit(FinalEvent(response=PROMPTS["TOOL_APOLOGY"]))
        return PROMPTS["TOOL_APOLOGY"], state, meta

    async def _fail(self, turn: _Turn, error: IntakeError, state: ConversationState, tags: Dict[str, Any]):
        cid = turn.correlation_id
        error.with_correlation(cid)
        self.telemetry.emit(TelemetryEvent.ERROR, cid, **tags, error=error.to_dict())
        message = error.to_user_response()
        await turn.emit(ErrorEvent(message=message, correlation_id=cid))
        return message, state, {"error_code": error.error_code}
