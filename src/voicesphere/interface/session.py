"""Conversation session controller.

Owns the transcript and the capture/processing state machine for one
conversation::

    IDLE → LISTENING → (capture finalized) → PROCESSING → IDLE
      └──────────── submit_query (typed) ──────┘

Everything runs on a single asyncio event loop.  The only overlapping
work is the relay call, held as one cancellable task tagged with a request
sequence number: a new submission cancels the previous task and bumps the
number, and a reply is applied only if its number is still current.  Relay
failures never escape as exceptions; they become an assistant turn so the
transcript stays continuous.  Capture failures only set ``last_error``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from voicesphere.interface.events import (
    CaptureEvent,
    CaptureFailed,
    CaptureFinalized,
    CapturePartial,
)
from voicesphere.interface.relay_client import ReplySource
from voicesphere.interface.voice.capture import (
    CaptureAdapter,
    CaptureError,
    CaptureUnavailableError,
    UnsupportedCapture,
)
from voicesphere.interface.voice.synthesis import SilentSynthesis, SynthesisAdapter
from voicesphere.models import Role, SessionSnapshot, SessionState, Turn
from voicesphere.relay.completion import RelayError

logger = logging.getLogger(__name__)

RECOGNITION_UNAVAILABLE = (
    "Speech recognition is unavailable. Please use a supported speech backend."
)
PERMISSION_DENIED_MESSAGE = (
    "Microphone access denied. Please enable it in your system settings."
)
MICROPHONE_FAILURE = "Unable to access microphone"
UNEXPECTED_PROBLEM = "I ran into an unexpected problem processing that."


class SessionController:
    """Drives one conversation between capture, relay and synthesis.

    Parameters
    ----------
    relay : ReplySource
        Where prompts are sent.
    capture : CaptureAdapter or None
        Speech capture; ``None`` means capture is unsupported.
    synthesis : SynthesisAdapter or None
        Speech output; ``None`` means replies are not spoken.
    on_change : callable or None
        Receives a :class:`SessionSnapshot` after every transition.
    """

    def __init__(
        self,
        relay: ReplySource,
        capture: Optional[CaptureAdapter] = None,
        synthesis: Optional[SynthesisAdapter] = None,
        on_change: Optional[Callable[[SessionSnapshot], None]] = None,
    ) -> None:
        self.relay = relay
        self.capture = capture or UnsupportedCapture()
        self.synthesis = synthesis or SilentSynthesis()
        self.on_change = on_change

        self._state = SessionState.IDLE
        self._transcript: list[Turn] = []
        self.pending_transcript = ""
        self.last_error: Optional[str] = None

        self._request_seq = 0
        self._inflight: Optional[asyncio.Task] = None
        self._events: asyncio.Queue[CaptureEvent] = asyncio.Queue()

        # Adapters emit from the loop, so events apply in the order they occur.
        self.capture.attach(self.dispatch)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def transcript(self) -> tuple[Turn, ...]:
        return tuple(self._transcript)

    @property
    def request_seq(self) -> int:
        return self._request_seq

    @property
    def inflight(self) -> Optional[asyncio.Task]:
        return self._inflight

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state,
            pending_transcript=self.pending_transcript,
            last_error=self.last_error,
            transcript=list(self._transcript),
        )

    # ------------------------------------------------------------------
    # Capture control
    # ------------------------------------------------------------------
    def start_capture(self) -> bool:
        """Begin listening.  Returns True if capture actually started.

        Calling this while already listening stops the capture instead.
        """
        if self._state is SessionState.LISTENING:
            self.stop_capture()
            return False

        self.pending_transcript = ""
        self.last_error = None
        try:
            if not self.capture.available:
                raise CaptureUnavailableError()
            self.capture.start()
        except CaptureUnavailableError:
            self.last_error = RECOGNITION_UNAVAILABLE
            self._changed()
            return False
        except CaptureError as exc:
            self.last_error = str(exc) or MICROPHONE_FAILURE
            self._changed()
            return False

        self._set_state(SessionState.LISTENING)
        self._changed()
        return True

    def stop_capture(self) -> None:
        """Cancel listening without submitting the partial text."""
        if self._state is not SessionState.LISTENING:
            return
        self.capture.stop()
        self.pending_transcript = ""
        self._set_state(self._resting_state())
        self._changed()

    def toggle_capture(self) -> bool:
        """Mic button: stop when listening, start otherwise."""
        if self._state is SessionState.LISTENING:
            self.stop_capture()
            return False
        return self.start_capture()

    # ------------------------------------------------------------------
    # Capture events
    # ------------------------------------------------------------------
    def post(self, event: CaptureEvent) -> None:
        """Queue an event for :meth:`run`.

        For producers that cannot call :meth:`dispatch` directly from the
        controller's loop.  Events queued here are applied after any
        command already running.
        """
        self._events.put_nowait(event)

    async def run(self) -> None:
        """Drain posted capture events, one transition at a time."""
        while True:
            event = await self._events.get()
            self.dispatch(event)

    def dispatch(self, event: CaptureEvent) -> None:
        """Apply one capture event to the session."""
        if isinstance(event, CapturePartial):
            if self._state is not SessionState.LISTENING:
                return
            # Backends report cumulative text, so replace rather than append.
            self.pending_transcript = event.text.strip()
            self._changed()

        elif isinstance(event, CaptureFinalized):
            if self._state is not SessionState.LISTENING:
                return
            text = self.pending_transcript.strip()
            self.pending_transcript = ""
            self._set_state(self._resting_state())
            if text:
                self.submit_query(text)
            else:
                self._changed()

        elif isinstance(event, CaptureFailed):
            if event.permission_denied:
                self.last_error = PERMISSION_DENIED_MESSAGE
            else:
                self.last_error = f"Recognition error: {event.code}"
            logger.info("Capture failed: %s %s", event.code, event.detail)
            if self._state is SessionState.LISTENING:
                self.capture.stop()
                self.pending_transcript = ""
                self._set_state(self._resting_state())
            self._changed()

        else:
            raise TypeError(f"Unknown capture event: {event!r}")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def submit_query(self, text: str) -> Optional[asyncio.Task]:
        """Send ``text`` to the relay, superseding any pending request.

        Must be called from a running event loop.  Blank text is ignored
        and returns None; otherwise the user turn is appended at once and
        the task resolving the reply is returned.
        """
        prompt = text.strip() if isinstance(text, str) else ""
        if not prompt:
            return None

        if self._state is SessionState.LISTENING:
            self.capture.stop()
            self.pending_transcript = ""

        history = list(self._transcript)
        self._transcript.append(Turn(role=Role.USER, content=prompt))

        self._cancel_inflight()
        self._request_seq += 1
        self._set_state(SessionState.PROCESSING)
        self._inflight = asyncio.get_running_loop().create_task(
            self._resolve(self._request_seq, prompt, history)
        )
        self._changed()
        return self._inflight

    async def _resolve(self, seq: int, prompt: str, history: list[Turn]) -> Optional[Turn]:
        try:
            content = await self.relay.fetch_reply(prompt, history)
        except asyncio.CancelledError:
            logger.debug("Request %d cancelled", seq)
            raise
        except RelayError as exc:
            content = f"I ran into a problem: {exc.message}"
        except Exception:
            logger.exception("Relay call failed unexpectedly")
            content = UNEXPECTED_PROBLEM

        if seq != self._request_seq:
            logger.debug("Discarding stale reply for request %d", seq)
            return None

        turn = Turn(role=Role.ASSISTANT, content=content)
        self._transcript.append(turn)
        self._inflight = None
        if self._state is SessionState.PROCESSING:
            self._set_state(SessionState.IDLE)
        self._changed()
        self.synthesis.speak(content)
        return turn

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def reset(self) -> None:
        """Drop the conversation and return to an idle, empty session."""
        self._cancel_inflight()
        # Invalidate anything that slips past cancellation.
        self._request_seq += 1
        if self._state is SessionState.LISTENING:
            self.capture.stop()
        self._transcript.clear()
        self.pending_transcript = ""
        self._set_state(SessionState.IDLE)
        self.synthesis.cancel_all()
        self._changed()

    def close(self) -> None:
        """Release in-flight work when the owning client goes away."""
        self._cancel_inflight()
        self._request_seq += 1
        if self._state is SessionState.LISTENING:
            self.capture.stop()
        self.synthesis.cancel_all()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------
    def _resting_state(self) -> SessionState:
        if self._inflight is not None and not self._inflight.done():
            return SessionState.PROCESSING
        return SessionState.IDLE

    def _set_state(self, new_state: SessionState) -> None:
        if new_state is self._state:
            return
        logger.debug("Session: %s → %s", self._state.value, new_state.value)
        self._state = new_state

    def _cancel_inflight(self) -> None:
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        self._inflight = None

    def _changed(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self.snapshot())
        except Exception:
            logger.exception("Session observer failed")
