# intake_agent/tools.py
"""
Tool collaborators behind the dispatcher:
- create_matter(): POST to the matter service, or store the matter locally (SQLAlchemy)
- request_lawyer_review(): POST to the review service, or log the request
- analyze_document(): POST to the document service; no local fallback
- show_contact_form(): the contact-form descriptor, honoring the team's location requirement

Every method returns a Result; HTTP failures become ExternalServiceError results.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .config import MATTER_API_URL, REVIEW_API_URL, DOCUMENT_API_URL, TOOLS_API_KEY, TOOL_TIMEOUT
from .db import SessionLocal, matter_to_dict, upsert_matter
from .errors import ConfigurationError, ExternalServiceError, Result, capture
from .models import TeamConfig

logger = logging.getLogger(__name__)

CONTACT_FORM_FIELDS = ("name", "email", "phone", "location", "opposingParty")

ANALYSIS_QUESTIONS = {
    "general": "Summarize this document and list the key facts, parties and dates.",
    "legal_document": "Identify the document type, the parties, deadlines and any obligations or rights it creates.",
    "contract": "Identify the parties, key terms, obligations, termination clauses and any unusual provisions.",
    "government_form": "Identify the form, the agency, required fields and any filing deadlines.",
    "medical_document": "Summarize the injuries, treatment, providers and dates relevant to a legal claim.",
    "image": "Describe what the image shows that could be relevant to a legal matter, such as damage or injuries.",
    "resume": "Summarize the work history and anything relevant to an employment dispute.",
}


def analysis_question(analysis_type: str, specific_question: Optional[str] = None) -> str:
    if specific_question:
        return specific_question
    return ANALYSIS_QUESTIONS.get(analysis_type, ANALYSIS_QUESTIONS["general"])


def contact_form_descriptor(team_config: Optional[TeamConfig] = None) -> Dict[str, Any]:
    required = ["name", "email", "phone"]
    if team_config is not None and team_config.require_location:
        required.append("location")
    return {"fields": list(CONTACT_FORM_FIELDS), "required": required}


async def _post(service: str, base_url: str, path: str, payload: Dict[str, Any],
                correlation_id: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, Any]:
    headers = {"Content-Type": "application/json"}
    if TOOLS_API_KEY: headers["x-api-key"] = TOOLS_API_KEY
    if correlation_id: headers["x-correlation-id"] = correlation_id
    timeout = httpx.Timeout(TOOL_TIMEOUT, connect=3.0)
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        try:
            r = await client.post(f"{base_url.rstrip('/')}{path}", headers=headers, json=payload)
            r.raise_for_status()
            js = r.json()
        except httpx.HTTPStatusError as e:
            # 4xx means the request itself was refused
            raise ExternalServiceError(service, f"HTTP {e.response.status_code}",
                                       retryable=e.response.status_code >= 500,
                                       correlation_id=correlation_id, original_error=e)
        except httpx.HTTPError as e:
            raise ExternalServiceError(service, type(e).__name__, correlation_id=correlation_id, original_error=e)
        except ValueError as e:
            raise ExternalServiceError(service, "invalid JSON response", retryable=False,
                                       correlation_id=correlation_id, original_error=e)
    return js if isinstance(js, dict) else {"result": js}


class ToolServices:
    def __init__(self, matter_url: str = MATTER_API_URL, review_url: str = REVIEW_API_URL,
                 document_url: str = DOCUMENT_API_URL, session_factory=SessionLocal,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.matter_url = matter_url
        self.review_url = review_url
        self.document_url = document_url
        self.session_factory = session_factory
        self.transport = transport

    async def show_contact_form(self, team_config: Optional[TeamConfig] = None) -> Result[Dict[str, Any]]:
        return Result.ok(contact_form_descriptor(team_config))

    async def create_matter(self, params: Dict[str, Any], *, session_id: Optional[str] = None,
                            team_id: Optional[str] = None, correlation_id: Optional[str] = None) -> Result[Dict[str, Any]]:
        if self.matter_url:
            payload = {**params, "session_id": session_id, "team_id": team_id}
            return await capture(lambda: _post("matters", self.matter_url, "/matters", payload, correlation_id, self.transport),
                                 context={"service": "matters"}, correlation_id=correlation_id,
                                 error_type=ExternalServiceError)

        async def store() -> Dict[str, Any]:
            with self.session_factory() as db:
                row = upsert_matter(db, params, session_id=session_id, team_id=team_id)
                db.commit()
                db.refresh(row)
                logger.info("Stored matter %s locally (team=%s)", row.matter_id, team_id)
                return matter_to_dict(row)

        return await capture(store, context={"service": "matters-db"}, correlation_id=correlation_id,
                             error_type=ExternalServiceError)

    async def request_lawyer_review(self, params: Dict[str, Any], *, team_config: Optional[TeamConfig] = None,
                                    correlation_id: Optional[str] = None) -> Result[Dict[str, Any]]:
        team_id = team_config.id if team_config is not None else None
        if not self.review_url:
            logger.info("Lawyer review requested (team=%s, matter_type=%s, complexity=%s)",
                        team_id, params.get("matter_type"), params.get("complexity"))
            return Result.ok({"queued": False, "notified": team_config.owner_email if team_config else None})
        payload = {**params, "team_id": team_id,
                   "owner_email": team_config.owner_email if team_config else None}
        return await capture(lambda: _post("reviews", self.review_url, "/reviews", payload, correlation_id, self.transport),
                             context={"service": "reviews"}, correlation_id=correlation_id,
                             error_type=ExternalServiceError)

    async def analyze_document(self, file_id: str, analysis_type: str = "general",
                               question: Optional[str] = None, *,
                               correlation_id: Optional[str] = None) -> Result[Dict[str, Any]]:
        if not self.document_url:
            return Result.fail(ConfigurationError("DOCUMENT_API_URL is not set",
                                                  context={"file_id": file_id}, correlation_id=correlation_id))
        payload = {"file_id": file_id, "analysis_type": analysis_type,
                   "question": analysis_question(analysis_type, question)}
        return await capture(lambda: _post("documents", self.document_url, "/analyze", payload, correlation_id, self.transport),
                             context={"service": "documents"}, correlation_id=correlation_id,
                             error_type=ExternalServiceError)
