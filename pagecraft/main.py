"""
FastAPI Web Application - page refinement API.
One Session per live document; turns run in a worker thread while progress
streams to the client over Server-Sent Events.
"""

import asyncio
import json
import re
import time
from queue import Queue
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .chains.refinement_chain import PipelineStep, RefinementChain
from .session import Session

load_dotenv()

# Per-session progress tracking for SSE (isolates concurrent users)
progress_sessions: Dict[str, Queue] = {}
progress_lock = Lock()

sessions: Dict[str, Session] = {}
sessions_lock = Lock()


def on_progress(step: PipelineStep):
    """Route a pipeline step to its session's SSE queue."""
    with progress_lock:
        queue = progress_sessions.get(step.session_id or "")
        if queue is not None:
            queue.put({
                "name": step.name,
                "status": step.status,
                "message": step.message,
                "duration": round(step.duration, 2),
            })


def _publish(session_id: str, event: Dict[str, Any]):
    with progress_lock:
        queue = progress_sessions.get(session_id)
        if queue is not None:
            queue.put(event)


# Initialize FastAPI app
app = FastAPI(
    title="Pagecraft",
    description="Iterative, validated and reversible natural-language page edits",
    version="1.0.0"
)

# CORS middleware - restrict origins for security
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:8000", "http://127.0.0.1:8000"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)

_chain: Optional[RefinementChain] = None
_chain_lock = Lock()


def get_chain() -> RefinementChain:
    """The shared chain, built on first use so importing the app needs no credentials."""
    global _chain
    with _chain_lock:
        if _chain is None:
            _chain = RefinementChain(on_step=on_progress)
        return _chain


def get_document_factory() -> Callable[[str], Any]:
    from .document.playwright_document import PlaywrightDocument
    return PlaywrightDocument


# ============ REQUEST/RESPONSE MODELS ============

class SessionRequest(BaseModel):
    url: str = Field(..., min_length=1, max_length=2000, description="Page the session edits")
    session_id: str = Field("", description="Client-generated session ID (also used for progress tracking)")


class SessionResponse(BaseModel):
    session_id: str
    url: str
    created_at: str


class TurnRequest(BaseModel):
    request: str = Field("", max_length=2000, description="Natural-language editing request")
    choice: Optional[int] = Field(None, ge=0, description="Index of a clarification option to answer")


class DefectInfo(BaseModel):
    severity: str
    category: str
    description: str
    suggested_fix: str = ""
    blocked: bool = False
    blocked_by: Optional[str] = None


class OptionInfo(BaseModel):
    label: str
    description: str


class TurnResponse(BaseModel):
    """Caller-facing turn result (camelCase on the wire)."""
    model_config = ConfigDict(populate_by_name=True)

    status: str
    snapshot: Optional[Dict[str, Any]] = None
    defects: List[DefectInfo] = []
    reason: str = ""
    intent: Optional[str] = None
    confidence: float = 0.0
    validation_attempts: int = Field(0, alias="validationAttempts")
    review_cycles: int = Field(0, alias="reviewCycles")
    needs_manual_review: bool = Field(False, alias="needsManualReview")
    quality_warning: Optional[str] = Field(None, alias="qualityWarning")
    quality_summary: Optional[Dict[str, Any]] = Field(None, alias="qualitySummary")
    clarification_options: List[OptionInfo] = Field([], alias="clarificationOptions")
    duration: float = 0.0


class HistoryResponse(BaseModel):
    session_id: str
    turns: List[Dict[str, Any]]


# ============ API ENDPOINTS ============

def _validate_session_id(session_id: str) -> str:
    """Session ids double as file names in the history directory."""
    if not re.match(r'^[a-zA-Z0-9_-]+$', session_id):
        raise HTTPException(status_code=400, detail="Invalid session ID")
    return session_id


def _get_session(session_id: str) -> Session:
    _validate_session_id(session_id)
    with sessions_lock:
        session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Unknown session")
    return session


@app.get("/api/progress")
async def progress_stream(session_id: str = ""):
    """SSE endpoint for real-time turn progress updates (per-session)."""
    with progress_lock:
        queue = progress_sessions.get(session_id)
        if queue is None:
            queue = Queue()
            progress_sessions[session_id] = queue
            print(f"📡 New SSE connection: Registered session {session_id}")
        else:
            print(f"📡 Reconnecting SSE: Found existing session {session_id}")

    async def event_generator():
        start = time.time()
        timeout = 600  # 10 minute max
        while time.time() - start < timeout:
            has_event = False
            while not queue.empty():
                event = queue.get_nowait()
                has_event = True
                yield f"data: {json.dumps(event)}\n\n"
                if event.get("name") in ("Complete", "Closed"):
                    return
            if not has_event:
                await asyncio.sleep(0.1)
        yield f"data: {json.dumps({'name': 'Timeout', 'status': 'failed', 'message': 'SSE timeout'})}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"
        }
    )


@app.post("/api/sessions", response_model=SessionResponse)
async def create_session(
    request: SessionRequest,
    chain: RefinementChain = Depends(get_chain),
    document_factory: Callable[[str], Any] = Depends(get_document_factory),
):
    """Open the page and start an editing conversation on it."""
    session_id = _validate_session_id(request.session_id) if request.session_id else None
    with sessions_lock:
        if session_id and session_id in sessions:
            raise HTTPException(status_code=409, detail="Session already exists")

    try:
        document = document_factory(request.url)
    except Exception as e:
        raise HTTPException(status_code=502, detail=f"Could not open page: {e}")
    session = chain.create_session(document, session_id=session_id)

    with sessions_lock:
        sessions[session.session_id] = session
    with progress_lock:
        progress_sessions.setdefault(session.session_id, Queue())
    return SessionResponse(session_id=session.session_id, url=request.url, created_at=session.created_at)


@app.post("/api/sessions/{session_id}/turns", response_model=TurnResponse, response_model_by_alias=True)
async def run_turn(session_id: str, request: TurnRequest, chain: RefinementChain = Depends(get_chain)):
    """
    Run one editing turn.

    Pipeline: Classify → Generate/Validate → Apply → Review → Record
    """
    session = _get_session(session_id)
    if request.choice is None and not request.request.strip():
        raise HTTPException(status_code=422, detail="Either a request or a clarification choice is required")

    # Run in a background thread so SSE keeps streaming
    result = await asyncio.to_thread(chain.run_turn, session, request.request, request.choice)
    _publish(session_id, {
        "name": "Complete",
        "status": result.status.value,
        "message": result.reason,
    })
    return TurnResponse.model_validate(result.to_dict())


@app.post("/api/sessions/{session_id}/cancel")
async def cancel_turn(session_id: str, chain: RefinementChain = Depends(get_chain)):
    session = _get_session(session_id)
    return {"session_id": session_id, "cancelled": chain.cancel(session)}


@app.get("/api/sessions/{session_id}/history", response_model=HistoryResponse)
async def session_history(session_id: str, chain: RefinementChain = Depends(get_chain)):
    """Turn log of a live session, or of a finished one when history is persisted."""
    _validate_session_id(session_id)
    with sessions_lock:
        session = sessions.get(session_id)
    if session is not None:
        turns = session.turns
    else:
        turns = chain.history_store.load(session_id)
        if not turns:
            raise HTTPException(status_code=404, detail="Unknown session")
    return HistoryResponse(session_id=session_id, turns=[t.to_dict() for t in turns])


@app.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str, chain: RefinementChain = Depends(get_chain)):
    """Tear the session down and close its page."""
    session = _get_session(session_id)
    with sessions_lock:
        sessions.pop(session_id, None)
    chain.close_session(session)

    close = getattr(session.document, "close", None)
    if callable(close):
        try:
            await asyncio.to_thread(close)
        except Exception as e:
            print(f"⚠️ Closing page for {session_id} failed: {e}")

    _publish(session_id, {"name": "Closed", "status": "completed", "message": "Session closed"})
    with progress_lock:
        progress_sessions.pop(session_id, None)
    return {"session_id": session_id, "deleted": True}


@app.get("/api/health")
async def health():
    with sessions_lock:
        active = len(sessions)
    return {"status": "ok", "active_sessions": active}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
