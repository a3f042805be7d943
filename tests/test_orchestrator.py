"""
Turn orchestration tests

End-to-end turns over fake model / team / tool collaborators and an
in-memory session store.
"""

import pytest

from conftest import FakeModelClient, FakeTeamClient, FakeToolServices, no_sleep
from intake_agent.dispatcher import ToolDispatcher, build_tool_registry
from intake_agent.errors import AIServiceError, ConfigurationError, ExternalServiceError, Result
from intake_agent.models import ConversationState, Message, TeamConfig
from intake_agent.orchestrator import IntakeOrchestrator, matter_already_created
from intake_agent.prompts import PROMPTS
from intake_agent.streaming import EventChannel
from intake_agent.telemetry import MemorySink, Telemetry

STORY = "My employer has not paid me overtime for three months and I want to do something about it"
EXTRACTION = {"legal_issue_type": "Employment Law", "description": "Unpaid overtime for three months"}

CREATE_MATTER = (
    "Thank you, I'm creating your matter now.\n"
    "TOOL_CALL: create_matter\n"
    'PARAMETERS: {"matter_type": "Employment Law", "description": "Unpaid overtime", '
    '"name": "Pat Lee", "email": "pat@example.com"}'
)


def _types(events):
    return [e["type"] for e in events]


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def build(session_store, fast_retry, sink):
    def _build(replies=None, extraction=EXTRACTION, services=None, team_client=None):
        model = FakeModelClient(replies=replies, extraction=extraction)
        services = services or FakeToolServices()
        dispatcher = ToolDispatcher(build_tool_registry(services), session_store)
        orch = IntakeOrchestrator(model, dispatcher, team_client or FakeTeamClient(), Telemetry(sink),
                                  fast_retry, chunk_delay=0.01, sleep=no_sleep)
        return orch, model, services
    return _build


class TestCompletionShortCircuit:
    def test_metadata_marks_completion(self, make_messages):
        msgs = make_messages(STORY, ("assistant", "Done.", {"tool_name": "create_matter", "success": True}))
        assert matter_already_created(msgs)

    def test_failed_attempt_does_not_count(self, make_messages):
        msgs = make_messages(("assistant", "TOOL_CALL: create_matter\nPARAMETERS: {}",
                              {"tool_name": "create_matter", "success": False}))
        assert not matter_already_created(msgs)

    def test_user_text_does_not_count(self):
        assert not matter_already_created([Message(role="user", content="was my matter created?")])

    def test_assistant_prose_about_creating_a_matter_does_not_count(self):
        msgs = [Message(role="assistant", content="Once we get your matter created, a lawyer will follow up.")]
        assert not matter_already_created(msgs)

    def test_canned_success_reply_counts(self):
        assert matter_already_created([Message(role="assistant", content=PROMPTS["MATTER_CREATED"])])

    @pytest.mark.asyncio
    async def test_already_created_skips_model(self, build):
        orch, model, _ = build(replies=["should not be used"])
        msgs = [
            Message(role="user", content=STORY),
            Message(role="assistant", content="Your matter has been created. A lawyer will call."),
            Message(role="user", content="thanks, and one more thing"),
        ]
        resp = await orch.run(msgs, session_id="s1")
        assert resp.response == PROMPTS["ALREADY_HANDLED"]
        assert resp.state == ConversationState.MATTER_CREATED
        assert _types(resp.events) == ["connected", "final"]
        assert model.chat_calls == [] and model.extraction_calls == []


class TestProse:
    @pytest.mark.asyncio
    async def test_prose_streams_chunks_then_final(self, build, sink):
        reply = "I'm sorry to hear that. How long has this been going on?"
        orch, model, _ = build(replies=[reply])
        channel = EventChannel()
        resp = await orch.run([Message(role="user", content=STORY)], team_id="t1", session_id="s1", output=channel)

        types = _types(resp.events)
        assert types[0] == "connected"
        assert types[1] == "typing"
        assert types[-1] == "final"
        assert set(types[2:-1]) == {"text"}
        assert "".join(e["text"] for e in resp.events if e["type"] == "text") == reply
        assert resp.response == reply
        assert channel.closed
        assert channel.sent == resp.events
        assert sink.events()[0] == "turn_start" and sink.events()[-1] == "turn_end"
        assert len({r["correlation_id"] for r in sink.records}) == 1
        assert model.chat_calls[0][0]["role"] == "system"

    @pytest.mark.asyncio
    async def test_closed_channel_stops_text_emission(self, build):
        reply = "I'm sorry to hear that. How long has this been going on?"
        orch, _, _ = build(replies=[reply])
        channel = EventChannel()

        async def disconnect(delay):
            channel.close()

        orch.sleep = disconnect
        resp = await orch.run([Message(role="user", content=STORY)], output=channel)
        assert _types(channel.sent) == ["connected", "typing", "text"]
        assert "final" not in _types(channel.sent)
        assert channel.closed
        assert resp.response == reply

    @pytest.mark.asyncio
    async def test_greeting_turn(self, build):
        orch, model, _ = build(replies=["Hello! How can I help you with your legal matter today?"])
        resp = await orch.run([Message(role="user", content="hi")])
        assert resp.state == ConversationState.GATHERING_INFORMATION
        assert model.extraction_calls == []
        assert _types(resp.events)[-1] == "final"

    @pytest.mark.asyncio
    async def test_empty_output_falls_back(self, build, session_store):
        orch, _, services = build(replies=[""])
        channel = EventChannel()
        resp = await orch.run([Message(role="user", content=STORY)], session_id="s1", output=channel)
        assert _types(resp.events) == ["connected", "typing", "final"]
        assert resp.events[-1]["response"] == PROMPTS["FALLBACK"]
        assert channel.closed
        assert services.calls == []

    @pytest.mark.asyncio
    async def test_too_short_output_falls_back(self, build):
        orch, _, _ = build(replies=["ok"])
        resp = await orch.run([Message(role="user", content=STORY)])
        assert resp.response == PROMPTS["FALLBACK"]


class TestModelFailures:
    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, build):
        orch, model, _ = build(replies=[AIServiceError("busy"), "Could you tell me a bit more about your job?"])
        resp = await orch.run([Message(role="user", content=STORY)])
        assert len(model.chat_calls) == 2
        assert resp.events[-1]["type"] == "final"

    @pytest.mark.asyncio
    async def test_exhausted_retries_emit_error(self, build, sink):
        orch, model, _ = build(replies=[AIServiceError("busy")] * 3)
        resp = await orch.run([Message(role="user", content=STORY)])
        assert len(model.chat_calls) == 3
        last = resp.events[-1]
        assert last["type"] == "error"
        assert last["correlation_id"] == resp.correlation_id
        assert "busy" not in last["message"]
        assert "error" in sink.events()

    @pytest.mark.asyncio
    async def test_configuration_error_is_not_retried(self, build):
        orch, model, _ = build(replies=[ConfigurationError("OPENAI_API_KEY is not set")])
        resp = await orch.run([Message(role="user", content=STORY)])
        assert len(model.chat_calls) == 1
        assert resp.events[-1]["type"] == "error"
        assert resp.metadata["error_code"] == "CONFIGURATION_ERROR"

    @pytest.mark.asyncio
    async def test_team_lookup_failure_degrades(self, build):
        team_client = FakeTeamClient(error=ExternalServiceError("teams", "HTTP 503"))
        orch, _, _ = build(replies=["Could you tell me a bit more about your job?"], team_client=team_client)
        resp = await orch.run([Message(role="user", content=STORY)], team_id="t1")
        assert resp.events[-1]["type"] == "final"
        assert team_client.calls == ["t1"]


class TestToolCalls:
    @pytest.mark.asyncio
    async def test_parse_error_asks_to_rephrase(self, build, session_store):
        orch, _, services = build(replies=['TOOL_CALL: create_matter\nPARAMETERS: {"name": oops}'])
        resp = await orch.run([Message(role="user", content=STORY)])
        last = resp.events[-1]
        assert last == {"type": "error", "message": PROMPTS["REPHRASE"], "correlation_id": resp.correlation_id}
        assert services.calls == []

    @pytest.mark.asyncio
    async def test_show_contact_form(self, build, session_store):
        orch, _, _ = build(replies=["Let me get your details.\nTOOL_CALL: show_contact_form\nPARAMETERS: {}"])
        team = TeamConfig(id="t1", require_location=True)
        orch.team_client = FakeTeamClient(team=team)
        resp = await orch.run([Message(role="user", content=STORY)], team_id="t1", session_id="s-form")
        assert _types(resp.events) == ["connected", "typing", "typing", "tool_call", "tool_result", "final"]
        assert "location" in resp.events[4]["data"]["contact_form"]["required"]
        assert session_store.contact_form_shown("s-form")

    @pytest.mark.asyncio
    async def test_create_matter_success(self, build, session_store):
        session_store.mark_contact_form_shown("s-ok")
        orch, _, services = build(replies=[CREATE_MATTER])
        resp = await orch.run([Message(role="user", content=STORY + " pat@example.com")], session_id="s-ok")
        assert resp.state == ConversationState.MATTER_CREATED
        tool_call = next(e for e in resp.events if e["type"] == "tool_call")
        assert tool_call["parameters"]["email"] == "pa***@example.com"
        assert resp.events[-1]["type"] == "final"
        assert "matter has been created" in resp.response.lower()
        assert services.calls[0][0] == "create_matter"

    @pytest.mark.asyncio
    async def test_create_matter_failure_keeps_channel_open(self, build, session_store):
        session_store.mark_contact_form_shown("s-fail")
        services = FakeToolServices(matter_result=Result.fail(ExternalServiceError("matters", "HTTP 503")))
        orch, _, _ = build(replies=[CREATE_MATTER], services=services)
        channel = EventChannel()
        resp = await orch.run([Message(role="user", content=STORY)], session_id="s-fail", output=channel)

        types = _types(resp.events)
        assert types[-2:] == ["tool_result", "tool_error"]
        assert "final" not in types
        assert resp.events[-1]["allow_retry"] is True
        assert resp.state == ConversationState.MATTER_CREATION_FAILED
        assert not channel.closed
        assert channel.ended

    @pytest.mark.asyncio
    async def test_create_matter_without_contact_form(self, build):
        orch, _, services = build(replies=[CREATE_MATTER])
        resp = await orch.run([Message(role="user", content=STORY)], session_id="s-nogate")
        assert resp.events[-1]["type"] == "tool_error"
        assert resp.events[-1]["response"] == PROMPTS["CONTACT_FORM_REQUIRED"]
        assert services.calls == []

    @pytest.mark.asyncio
    async def test_other_tool_failure_is_terminal(self, build):
        services = FakeToolServices(review_result=Result.fail(ExternalServiceError("reviews", "HTTP 500")))
        orch, _, _ = build(replies=['TOOL_CALL: request_lawyer_review\nPARAMETERS: {"matter_type": "Employment Law"}'],
                           services=services)
        channel = EventChannel()
        resp = await orch.run([Message(role="user", content=STORY)], output=channel)
        assert _types(resp.events)[-2:] == ["tool_result", "final"]
        assert resp.response == PROMPTS["TOOL_APOLOGY"]
        assert channel.closed

    @pytest.mark.asyncio
    async def test_exactly_one_terminal_event(self, build):
        orch, _, _ = build(replies=["TOOL_CALL: show_contact_form\nPARAMETERS: {}"])
        resp = await orch.run([Message(role="user", content=STORY)], session_id="s-x")
        types = _types(resp.events)
        assert types.count("connected") == 1
        assert sum(t in ("final", "error") for t in types) == 1

    @pytest.mark.asyncio
    async def test_invalid_create_matter_fields_allow_retry(self, build, session_store):
        session_store.mark_contact_form_shown("s-short-name")
        reply = ('TOOL_CALL: create_matter\nPARAMETERS: {"matter_type": "Employment Law", '
                 '"description": "Unpaid overtime", "name": "P", "email": "pat@example.com"}')
        orch, _, services = build(replies=[reply])
        channel = EventChannel()
        resp = await orch.run([Message(role="user", content=STORY)], session_id="s-short-name", output=channel)

        assert _types(resp.events) == ["connected", "typing", "typing", "tool_result", "tool_error"]
        assert resp.events[-1]["allow_retry"] is True
        assert "full name" in resp.events[-1]["response"]
        assert resp.state == ConversationState.MATTER_CREATION_FAILED
        assert not channel.closed
        assert services.calls == []

    @pytest.mark.asyncio
    async def test_parenthesized_phone_is_accepted(self, build, session_store):
        session_store.mark_contact_form_shown("s-phone")
        reply = ('TOOL_CALL: create_matter\nPARAMETERS: {"matter_type": "Employment Law", '
                 '"description": "Unpaid overtime", "name": "Pat Lee", "phone": "(555) 234-5678"}')
        orch, _, services = build(replies=[reply])
        resp = await orch.run([Message(role="user", content=STORY + " call (555) 234-5678")], session_id="s-phone")
        assert resp.state == ConversationState.MATTER_CREATED
        assert services.calls[0][0] == "create_matter"

    @pytest.mark.asyncio
    async def test_invalid_review_fields_are_terminal(self, build):
        orch, _, services = build(replies=['TOOL_CALL: request_lawyer_review\nPARAMETERS: {"matter_type": "Tax Law"}'])
        resp = await orch.run([Message(role="user", content=STORY)])
        assert _types(resp.events)[-2:] == ["tool_result", "final"]
        assert resp.events[-2]["success"] is False
        assert resp.response == PROMPTS["TOOL_APOLOGY"]
        assert services.calls == []
