"""
Error taxonomy and Result tests
"""

import pytest

from intake_agent.errors import (
    AIServiceError, ConversationStateError, ExternalServiceError, IntakeError, Result,
    ToolCallParseError, ValidationError, capture,
)


class TestIntakeError:
    def test_str_carries_code(self):
        assert str(ValidationError("name missing")) == "[VALIDATION_ERROR] name missing"

    def test_validation_message_is_user_facing(self):
        assert ValidationError("Please give your full name.").to_user_response() == "Please give your full name."

    def test_parse_error_asks_to_rephrase(self):
        err = ToolCallParseError("bad json")
        assert isinstance(err, ValidationError)
        assert "rephrase" in err.to_user_response()

    def test_internal_message_never_reaches_user(self):
        err = AIServiceError("openai 502 at /v1/chat/completions")
        assert "502" not in err.to_user_response()

    def test_external_service_context(self):
        err = ExternalServiceError("matters", "HTTP 503")
        assert err.context["service"] == "matters"
        assert err.retryable
        assert "matters" in err.message

    def test_with_correlation_keeps_first_id(self):
        err = ValidationError("x", correlation_id="a")
        assert err.with_correlation("b").correlation_id == "a"
        assert ValidationError("x").with_correlation("b").correlation_id == "b"

    def test_to_dict(self):
        cause = KeyError("k")
        d = ConversationStateError("lost", context={"stage": "extract"}, original_error=cause).to_dict()
        assert d["error_type"] == "ConversationStateError"
        assert d["context"] == {"stage": "extract"}
        assert d["retryable"] is False
        assert "KeyError" in d["original_error"]


class TestResult:
    def test_ok_unwraps(self):
        assert Result.ok(5).unwrap() == 5

    def test_fail_unwrap_raises(self):
        with pytest.raises(ValidationError):
            Result.fail(ValidationError("no")).unwrap()

    @pytest.mark.asyncio
    async def test_capture_success(self):
        async def op():
            return "value"

        result = await capture(op)
        assert result.success and result.data == "value"

    @pytest.mark.asyncio
    async def test_capture_keeps_typed_errors(self):
        async def op():
            raise AIServiceError("down")

        result = await capture(op, correlation_id="cid")
        assert isinstance(result.error, AIServiceError)
        assert result.error.correlation_id == "cid"

    @pytest.mark.asyncio
    async def test_capture_wraps_unknown_errors(self):
        async def op():
            raise RuntimeError("socket closed")

        result = await capture(op, context={"service": "teams"}, error_type=ExternalServiceError)
        assert isinstance(result.error, ExternalServiceError)
        assert result.error.service == "teams"
        assert isinstance(result.error.original_error, RuntimeError)

    @pytest.mark.asyncio
    async def test_capture_default_type(self):
        async def op():
            raise ValueError()

        result = await capture(op)
        assert type(result.error) is ConversationStateError
        assert isinstance(result.error, IntakeError)
