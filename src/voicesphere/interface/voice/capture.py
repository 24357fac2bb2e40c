"""Speech capture adapters.

A capture adapter turns microphone audio into ``CaptureEvent``s for the
session controller.  Whether capture exists at all is decided once at
startup by :func:`resolve_capture`; an environment without a recognizer
gets :class:`UnsupportedCapture`, whose ``start`` always fails.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol

from voicesphere.interface.events import (
    CaptureEvent,
    CaptureFailed,
    CaptureFinalized,
    CapturePartial,
)
from voicesphere.interface.voice.stt import TranscriptionError, WhisperSTT

logger = logging.getLogger(__name__)

CaptureListener = Callable[[CaptureEvent], None]


class CaptureError(RuntimeError):
    """A capture backend failed to start or run."""

    def __init__(self, message: str, code: str = "audio-capture") -> None:
        super().__init__(message)
        self.code = code


class CaptureUnavailableError(CaptureError):
    """No speech capture capability exists in this environment."""

    def __init__(self, message: str = "Speech capture is not supported here") -> None:
        super().__init__(message, code="unsupported")


class CaptureAdapter(Protocol):
    """Capability the session controller drives."""

    @property
    def available(self) -> bool:
        ...

    def attach(self, listener: CaptureListener) -> None:
        ...

    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...


class UnsupportedCapture:
    """Placeholder used when no recognizer backend is installed."""

    available = False

    def attach(self, listener: CaptureListener) -> None:
        pass

    def start(self) -> None:
        raise CaptureUnavailableError()

    def stop(self) -> None:
        pass


class SegmentCapture:
    """Capture fed with complete speech segments from a remote client.

    The client performs voice-activity detection and sends each segment as
    WAV (or raw 16-bit PCM).  Every segment is transcribed off the event
    loop and the cumulative text of the capture so far is emitted as a
    partial result; :meth:`end` finalizes the capture.
    """

    def __init__(self, stt: WhisperSTT, sample_rate: int = 16000) -> None:
        self.stt = stt
        self.sample_rate = sample_rate
        self._listener: Optional[CaptureListener] = None
        self._active = False
        self._segments: list[str] = []

    @property
    def available(self) -> bool:
        return self.stt.available

    @property
    def active(self) -> bool:
        return self._active

    def attach(self, listener: CaptureListener) -> None:
        self._listener = listener

    def start(self) -> None:
        if not self.available:
            raise CaptureUnavailableError()
        self._active = True
        self._segments = []

    def stop(self) -> None:
        self._active = False
        self._segments = []

    def end(self) -> None:
        """The speaker finished; emit the finalize signal."""
        if not self._active:
            return
        self._active = False
        self._emit(CaptureFinalized())

    async def feed(self, audio: bytes) -> None:
        """Transcribe one segment and report the cumulative text."""
        if not self._active:
            logger.debug("Dropping %d audio bytes: capture not active", len(audio))
            return

        loop = asyncio.get_running_loop()
        try:
            text = await loop.run_in_executor(
                None, self.stt.transcribe, audio, self.sample_rate
            )
        except TranscriptionError as exc:
            self._active = False
            self._segments = []
            self._emit(CaptureFailed(code="audio-capture", detail=str(exc)))
            return

        # Stopped while the segment was being transcribed.
        if not self._active or not text:
            return
        self._segments.append(text)
        self._emit(CapturePartial(text=" ".join(self._segments)))

    def _emit(self, event: CaptureEvent) -> None:
        if self._listener is None:
            logger.debug("No capture listener attached; dropping %r", event)
            return
        self._listener(event)


def resolve_capture(stt: Optional[WhisperSTT]) -> CaptureAdapter:
    """Pick the capture adapter for this environment."""
    if stt is not None and stt.available:
        return SegmentCapture(stt)
    logger.info("Speech capture unavailable; typed input only")
    return UnsupportedCapture()
