# intake_agent/main.py
import asyncio
import logging
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from .config import ORCH_API_KEY, LOG_LEVEL, OPENAI_MODEL
from .db import SqlSessionStore, init_db
from .dispatcher import ToolDispatcher, build_tool_registry
from .llm import OpenAIModelClient
from .models import AgentRequest, AgentResponse
from .orchestrator import IntakeOrchestrator
from .streaming import EventChannel, encode_sse
from .tools import ToolServices

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Legal Intake Orchestrator", version="1.0.0")
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
init_db()

SESSION_STORE = SqlSessionStore()


@lru_cache(maxsize=1)
def get_orchestrator() -> IntakeOrchestrator:
    dispatcher = ToolDispatcher(build_tool_registry(ToolServices()), SESSION_STORE)
    return IntakeOrchestrator(OpenAIModelClient(), dispatcher)


def check_api_key(x_api_key: Optional[str] = Header(None)):
    if ORCH_API_KEY and x_api_key != ORCH_API_KEY:
        raise HTTPException(status_code=401, detail="unauthorized")


@app.get("/health")
def health():
    return {"status": "ok", "model": OPENAI_MODEL, "sessions": SESSION_STORE.count_sessions()}


@app.post("/agent", response_model=AgentResponse, dependencies=[Depends(check_api_key)])
async def agent(req: AgentRequest, orchestrator: IntakeOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.run(req.messages, team_id=req.team_id, session_id=req.session_id,
                                  attachments=req.attachments)


@app.post("/agent/stream", dependencies=[Depends(check_api_key)])
async def agent_stream(req: AgentRequest, orchestrator: IntakeOrchestrator = Depends(get_orchestrator)):
    channel = EventChannel()

    async def produce():
        try:
            await orchestrator.run(req.messages, team_id=req.team_id, session_id=req.session_id,
                                   attachments=req.attachments, output=channel)
        except Exception:
            logger.exception("Streaming turn failed (session=%s)", req.session_id)
            channel.close()
            raise

    async def frames():
        task = asyncio.create_task(produce())
        try:
            async for event in channel:
                yield encode_sse(event)
        finally:
            # client gone: further sends become no-ops
            channel.close()
            await asyncio.gather(task, return_exceptions=True)

    return StreamingResponse(frames(), media_type="text/event-stream",
                             headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"})
