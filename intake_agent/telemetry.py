# intake_agent/telemetry.py
"""
Structured turn telemetry.

Every record carries correlation_id / session_id / team_id so an external
collector can stitch one turn together across systems. Records go to the
`intake_agent.telemetry` logger as JSON, and to an optional sink callable.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .utils import redact_parameters

logger = logging.getLogger("intake_agent.telemetry")


class TelemetryEvent(str, Enum):
    TURN_START = "turn_start"
    STATE = "state"
    MODEL_CALL = "model_call"
    MODEL_RESPONSE = "model_response"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SECURITY_EVENT = "security_event"
    ERROR = "error"
    TURN_END = "turn_end"


_LEVELS = {
    TelemetryEvent.ERROR: logging.ERROR,
    TelemetryEvent.SECURITY_EVENT: logging.WARNING,
}


def new_correlation_id() -> str:
    return uuid.uuid4().hex


class Telemetry:
    def __init__(self, sink: Optional[Callable[[Dict[str, Any]], None]] = None):
        self.sink = sink

    def emit(self, event: TelemetryEvent, correlation_id: str, *, session_id: Optional[str] = None,
             team_id: Optional[str] = None, **fields: Any) -> Dict[str, Any]:
        record = {
            "event": event.value,
            "correlation_id": correlation_id,
            "session_id": session_id,
            "team_id": team_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **fields,
        }
        logger.log(_LEVELS.get(event, logging.INFO), json.dumps(record, default=str))
        if self.sink is not None:
            try:
                self.sink(record)
            except Exception:
                logger.exception("telemetry sink failed for %s", event.value)
        return record

    def tool_call(self, correlation_id: str, tool_name: str, parameters: Dict[str, Any], **kw) -> Dict[str, Any]:
        return self.emit(TelemetryEvent.TOOL_CALL, correlation_id, tool=tool_name,
                         parameters=redact_parameters(parameters), **kw)


class MemorySink:
    """Collects records in memory; handy for tests and local debugging."""

    def __init__(self):
        self.records: List[Dict[str, Any]] = []

    def __call__(self, record: Dict[str, Any]) -> None:
        self.records.append(record)

    def events(self) -> List[str]:
        return [r["event"] for r in self.records]
