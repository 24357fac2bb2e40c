"""WebSocket server bridging a voice client to a session controller.

Runs as a FastAPI application.  Each client connects over a single
WebSocket and gets its own :class:`SessionController`; the completion
relay endpoint is served from the same app.

Message protocol (client → server)
-----------------------------------
Text frames are JSON::

    {"type": "start"}                 # begin listening
    {"type": "stop"}                  # cancel listening, nothing submitted
    {"type": "toggle"}                # mic button
    {"type": "speech_end"}            # speaker finished; finalize capture
    {"type": "text", "query": "..."}  # typed query (bypass capture)
    {"type": "reset"}                 # clear the conversation
    {"type": "capture_error", "code": "not-allowed", "detail": "..."}
    {"type": "ping"}                  # keep-alive

Binary frames: one speech segment (WAV or 16-bit PCM) from client VAD.

Message protocol (server → client)
-----------------------------------
Text frames are JSON::

    {"type": "status", "message": "...", ...capabilities...}
    {"type": "snapshot", "state": "...", "pending_transcript": "...",
     "last_error": ..., "transcript": [...]}
    {"type": "pong"}
    {"type": "error", "message": "..."}

Binary frames are WAV audio of the spoken reply.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from voicesphere.config import Settings, get_settings
from voicesphere.interface.events import CaptureFailed
from voicesphere.interface.relay_client import (
    HttpRelayClient,
    LocalRelayClient,
    ReplySource,
)
from voicesphere.interface.session import SessionController
from voicesphere.interface.voice.capture import SegmentCapture, resolve_capture
from voicesphere.interface.voice.stt import WhisperSTT
from voicesphere.interface.voice.synthesis import (
    SilentSynthesis,
    resolve_synthesis,
    resolve_tts_engine,
)
from voicesphere.interface.voice.tts import TTSEngine
from voicesphere.models import SessionSnapshot
from voicesphere.relay.completion import CompletionRelay
from voicesphere.web.app import router as relay_router

logger = logging.getLogger(__name__)

Outgoing = Union[dict, bytes]


def create_interface_app(
    settings: Optional[Settings] = None,
    reply_source: Optional[ReplySource] = None,
    stt: Optional[WhisperSTT] = None,
    tts_engine: Optional[TTSEngine] = None,
) -> FastAPI:
    """Build the voice interface FastAPI application.

    Capabilities are resolved here, once: the Whisper backend probe decides
    whether connections get real capture or the unsupported placeholder,
    and a single TTS engine is shared by every connection.  Clients built
    here are closed when the app shuts down; injected ones are left to
    their owner.
    """
    settings = settings or get_settings()
    owned: list[object] = []

    # ---- shared state (created once, shared across connections) ----
    relay = CompletionRelay(settings)

    if reply_source is None:
        if settings.relay_url:
            reply_source = HttpRelayClient(settings.relay_url)
            owned.append(reply_source)
        else:
            reply_source = LocalRelayClient(relay)

    if stt is None:
        stt = WhisperSTT(
            model_size=settings.whisper_model,
            device=settings.whisper_device,
            language=settings.whisper_language,
        )

    if tts_engine is None:
        tts_engine = resolve_tts_engine(settings)
        if tts_engine is not None:
            owned.append(tts_engine)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        for resource in owned:
            if hasattr(resource, "aclose"):
                await resource.aclose()
            elif hasattr(resource, "close"):
                resource.close()
        logger.info("Interface shut down; released %d client(s)", len(owned))

    app = FastAPI(title="VoiceSphere Interface", version="0.1.0", lifespan=lifespan)
    app.state.relay = relay
    app.state.reply_source = reply_source
    app.state.tts_engine = tts_engine
    app.include_router(relay_router)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "stt_available": stt.available,
            "tts_available": tts_engine is not None,
            "compute_available": relay.available,
            "relay": settings.relay_url or "in-process",
        }

    # ---- WebSocket handler ----

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket):
        await ws.accept()

        outbox: asyncio.Queue[Outgoing] = asyncio.Queue()

        async def send_audio(wav: bytes) -> None:
            outbox.put_nowait(wav)

        def publish(snapshot: SessionSnapshot) -> None:
            outbox.put_nowait({"type": "snapshot", **snapshot.model_dump(mode="json")})

        capture = resolve_capture(stt)
        synthesis = resolve_synthesis(tts_engine, send_audio)
        session = SessionController(
            reply_source, capture=capture, synthesis=synthesis, on_change=publish
        )

        writer = asyncio.create_task(_drain_outbox(ws, outbox))

        outbox.put_nowait({
            "type": "status",
            "message": "VoiceSphere online. Tap to speak or type a question.",
            "capture_available": capture.available,
            "synthesis_available": not isinstance(synthesis, SilentSynthesis),
        })
        publish(session.snapshot())

        try:
            while True:
                msg = await ws.receive()
                if msg.get("type") == "websocket.disconnect":
                    break

                # -- binary: one speech segment --
                if msg.get("bytes"):
                    if isinstance(capture, SegmentCapture):
                        await capture.feed(bytes(msg["bytes"]))
                    continue

                # -- text: JSON command --
                if not msg.get("text"):
                    continue
                try:
                    data = json.loads(msg["text"])
                except json.JSONDecodeError:
                    outbox.put_nowait({"type": "error", "message": "Invalid JSON"})
                    continue
                if not isinstance(data, dict):
                    outbox.put_nowait({"type": "error", "message": "Expected a JSON object"})
                    continue

                _handle_command(data, session, capture, outbox)

        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("WebSocket error")
        finally:
            logger.info("Client disconnected")
            session.close()
            writer.cancel()

    return app


def _handle_command(
    data: dict,
    session: SessionController,
    capture: object,
    outbox: asyncio.Queue,
) -> None:
    """Apply one client command to the session."""
    msg_type = data.get("type", "")

    if msg_type == "ping":
        outbox.put_nowait({"type": "pong"})
    elif msg_type == "start":
        session.start_capture()
    elif msg_type == "stop":
        session.stop_capture()
    elif msg_type == "toggle":
        session.toggle_capture()
    elif msg_type == "speech_end":
        if isinstance(capture, SegmentCapture):
            capture.end()
    elif msg_type == "text":
        query = data.get("query")
        session.submit_query(query if isinstance(query, str) else "")
    elif msg_type == "reset":
        session.reset()
    elif msg_type == "capture_error":
        # Applied in frame order, like every other command.
        session.dispatch(CaptureFailed(
            code=str(data.get("code") or "unknown"),
            detail=str(data.get("detail") or ""),
        ))
    else:
        outbox.put_nowait({"type": "error", "message": f"Unknown message type: {msg_type!r}"})


async def _drain_outbox(ws: WebSocket, outbox: asyncio.Queue) -> None:
    """Serialise all writes to the socket through one task."""
    while True:
        item = await outbox.get()
        try:
            if isinstance(item, bytes):
                await ws.send_bytes(item)
            else:
                await ws.send_text(json.dumps(item))
        except Exception:
            logger.debug("Dropping outgoing frame; socket closed")
            return
