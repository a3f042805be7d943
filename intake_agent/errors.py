# intake_agent/errors.py
"""
Typed error hierarchy shared by every stage of a turn, plus the Result wrapper
used at the seams that must not raise (parser, dispatcher, collaborators).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class IntakeError(Exception):
    """Base class for all intake errors."""

    error_code = "INTAKE_ERROR"
    user_message = "I encountered an issue processing your request. Please try again."
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        retryable: Optional[bool] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        self.correlation_id = correlation_id
        self.retryable = self.default_retryable if retryable is None else retryable
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def with_correlation(self, correlation_id: Optional[str]) -> "IntakeError":
        if correlation_id and not self.correlation_id:
            self.correlation_id = correlation_id
        return self

    def to_user_response(self) -> str:
        return self.user_message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
            "original_error": repr(self.original_error) if self.original_error else None,
        }


class ValidationError(IntakeError):
    error_code = "VALIDATION_ERROR"

    def to_user_response(self) -> str:
        # validation messages are written for the user
        return self.message


class ToolCallParseError(ValidationError):
    error_code = "TOOL_CALL_PARSE_ERROR"
    user_message = "I had trouble understanding that request. Could you please rephrase it?"

    def to_user_response(self) -> str:
        return self.user_message


class ConversationStateError(IntakeError):
    error_code = "CONVERSATION_STATE_ERROR"
    user_message = "I'm having trouble understanding your message. Could you please rephrase or provide more details?"


class AIServiceError(IntakeError):
    error_code = "AI_SERVICE_ERROR"
    user_message = "I'm experiencing some technical difficulties. Please try again in a moment."
    default_retryable = True


class ExternalServiceError(IntakeError):
    error_code = "EXTERNAL_SERVICE_ERROR"
    user_message = "I'm having trouble connecting to our services. Please try again in a moment."
    default_retryable = True

    def __init__(self, service: str, message: str, **kwargs):
        context = dict(kwargs.pop("context", None) or {})
        context["service"] = service
        super().__init__(f"External service error ({service}): {message}", context=context, **kwargs)
        self.service = service


class ConfigurationError(IntakeError):
    error_code = "CONFIGURATION_ERROR"
    user_message = "There's a configuration issue on our side. Please contact support."


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success/failure wrapper. Exactly one of data/error is meaningful."""

    success: bool
    data: Optional[T] = None
    error: Optional[IntakeError] = None

    @classmethod
    def ok(cls, data: T = None) -> "Result[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: IntakeError) -> "Result[T]":
        return cls(success=False, error=error)

    def unwrap(self) -> T:
        if not self.success:
            raise self.error
        return self.data


async def capture(
    operation: Callable[[], Awaitable[T]],
    *,
    context: Optional[Dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
    error_type: Type[IntakeError] = ConversationStateError,
) -> Result[T]:
    """Run an async operation and convert any exception into a failed Result."""
    try:
        return Result.ok(await operation())
    except IntakeError as e:
        e.with_correlation(correlation_id)
        logger.warning("%s (correlation_id=%s)", e, e.correlation_id)
        return Result.fail(e)
    except Exception as e:
        if error_type is ExternalServiceError:
            err: IntakeError = ExternalServiceError(
                str((context or {}).get("service", "unknown")), str(e),
                context=context, correlation_id=correlation_id, original_error=e,
            )
        else:
            err = error_type(str(e) or type(e).__name__, context=context,
                             correlation_id=correlation_id, original_error=e)
        logger.error("%s (correlation_id=%s)", err, correlation_id, exc_info=True)
        return Result.fail(err)
