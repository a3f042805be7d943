"""
pytest shared fixtures

Fake collaborators (model, team service, tool services) and an in-memory
SQLite session store shared by the test modules.
"""

import json
import os
import sys
import tempfile

import pytest

# project root on the path so `intake_agent` imports without installation
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

# must be set before intake_agent.db creates its engine
_tmp_dir = tempfile.mkdtemp(prefix="intake-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmp_dir, 'intake.db')}"
os.environ.setdefault("ORCH_API_KEY", "")
os.environ.setdefault("MATTER_API_URL", "")
os.environ.setdefault("TEAM_API_URL", "")

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from intake_agent.db import Base, SqlSessionStore  # noqa: E402
from intake_agent.errors import Result  # noqa: E402
from intake_agent.models import Message  # noqa: E402
from intake_agent.retry import RetryPolicy  # noqa: E402


# ================================================================
# Fakes
# ================================================================

class FakeModelClient:
    """
    Scripted model. Extraction calls (response_format given) return
    `extraction`; chat calls pop from `replies` (str or Exception).
    """

    def __init__(self, replies=None, extraction=None):
        self.replies = list(replies or [])
        self.extraction = extraction if extraction is not None else {}
        self.chat_calls = []
        self.extraction_calls = []

    async def complete(self, messages, max_tokens=0, temperature=0.0, response_format=None, **kwargs):
        if response_format is not None:
            self.extraction_calls.append(messages)
            if isinstance(self.extraction, Exception):
                raise self.extraction
            payload = self.extraction if isinstance(self.extraction, str) else json.dumps(self.extraction)
            return {"response": payload}
        self.chat_calls.append(messages)
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        return {"response": reply}


class FakeTeamClient:
    def __init__(self, team=None, error=None):
        self.team = team
        self.error = error
        self.calls = []

    async def get_team(self, team_id):
        self.calls.append(team_id)
        if self.error is not None:
            raise self.error
        return self.team


class FakeToolServices:
    """Records calls; each method returns the configured Result."""

    def __init__(self, matter_result=None, review_result=None, document_result=None):
        self.matter_result = matter_result or Result.ok({"matter_id": "m-1", "status": "lead"})
        self.review_result = review_result or Result.ok({"queued": True})
        self.document_result = document_result or Result.ok({"summary": "A lease agreement", "confidence": 0.9})
        self.calls = []

    async def show_contact_form(self, team_config=None):
        self.calls.append(("show_contact_form", team_config))
        required = ["name", "email", "phone"] + (["location"] if team_config and team_config.require_location else [])
        return Result.ok({"fields": ["name", "email", "phone", "location", "opposingParty"], "required": required})

    async def create_matter(self, params, *, session_id=None, team_id=None, correlation_id=None):
        self.calls.append(("create_matter", params))
        return self.matter_result

    async def request_lawyer_review(self, params, *, team_config=None, correlation_id=None):
        self.calls.append(("request_lawyer_review", params))
        return self.review_result

    async def analyze_document(self, file_id, analysis_type="general", question=None, *, correlation_id=None):
        self.calls.append(("analyze_document", file_id))
        return self.document_result


async def no_sleep(_delay):
    return None


# ================================================================
# Fixtures
# ================================================================

@pytest.fixture
def memory_session_factory():
    """Session factory over a private in-memory SQLite database."""
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False},
                           poolclass=StaticPool, future=True)
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    engine.dispose()


@pytest.fixture
def session_store(memory_session_factory):
    return SqlSessionStore(memory_session_factory)


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0, timeout=None)


@pytest.fixture
def make_messages():
    def _make(*pairs):
        """('user', 'text'), ... or plain strings for user turns."""
        out = []
        for p in pairs:
            if isinstance(p, str):
                out.append(Message(role="user", content=p))
            else:
                role, content, *meta = p
                out.append(Message(role=role, content=content, metadata=meta[0] if meta else {}))
        return out
    return _make
