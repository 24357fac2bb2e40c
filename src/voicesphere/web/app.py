"""FastAPI relay endpoint for VoiceSphere."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from voicesphere.models import ChatRequest, ChatResponse, ErrorResponse
from voicesphere.relay.completion import CompletionRelay, RelayError

logger = logging.getLogger(__name__)


def get_relay(request: Request) -> CompletionRelay:
    """Return the app's relay, creating it on first use."""
    relay = getattr(request.app.state, "relay", None)
    if relay is None:
        relay = CompletionRelay()
        request.app.state.relay = relay
    return relay


router = APIRouter()


# ======================================================================
# API endpoints
# ======================================================================
@router.post(
    "/api/chat",
    response_model=ChatResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def api_chat(req: ChatRequest, relay: CompletionRelay = Depends(get_relay)):
    """Relay one prompt (plus prior turns) and return the assistant reply."""
    try:
        reply = await run_in_threadpool(relay.get_reply, req.prompt, req.history)
    except RelayError as exc:
        logger.warning("Relay request failed (%d): %s", exc.status_code, exc.message)
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)
    return ChatResponse(reply=reply)


app = FastAPI(title="VoiceSphere", version="0.1.0")
app.include_router(router)


@app.get("/health")
async def health(relay: CompletionRelay = Depends(get_relay)):
    return {
        "status": "ok",
        "compute_available": relay.available,
        "provider": relay.provider,
        "model": relay.model,
    }
