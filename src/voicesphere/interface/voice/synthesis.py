"""Speech synthesis adapters used by the session controller.

Synthesis is fire-and-forget: ``speak`` cancels whatever is still being
rendered and starts the new utterance, so only the most recent reply is
ever heard.  No completion acknowledgment is reported back.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

from voicesphere.config import Settings
from voicesphere.interface.voice.tts import (
    SynthesisUnavailableError,
    TTSEngine,
    create_tts_engine,
)

logger = logging.getLogger(__name__)

AudioSink = Callable[[bytes], Awaitable[None]]


class SynthesisAdapter(Protocol):
    def speak(self, text: str) -> None:
        ...

    def cancel_all(self) -> None:
        ...


def truncate_for_speech(text: str, max_chars: int = 1500) -> str:
    """Truncate text for TTS, breaking at sentence boundaries."""
    if len(text) <= max_chars:
        return text
    truncated = text[:max_chars]
    for sep in [". ", ".\n", "! ", "? "]:
        idx = truncated.rfind(sep)
        if idx > max_chars // 2:
            return truncated[: idx + 1]
    return truncated


class SilentSynthesis:
    """Used when no TTS engine is configured."""

    def speak(self, text: str) -> None:
        logger.debug("No synthesis engine; not speaking %d chars", len(text))

    def cancel_all(self) -> None:
        pass


class EngineSynthesis:
    """Render replies with a TTS engine and push the WAV to ``sink``.

    Must be used from a running event loop.  The engine call runs in the
    default executor; a cancelled utterance never reaches the sink.
    """

    def __init__(self, engine: TTSEngine, sink: AudioSink, max_chars: int = 1500) -> None:
        self.engine = engine
        self.sink = sink
        self.max_chars = max_chars
        self._task: Optional[asyncio.Task] = None

    @property
    def speaking(self) -> bool:
        return self._task is not None and not self._task.done()

    def speak(self, text: str) -> None:
        self.cancel_all()
        text = truncate_for_speech(text.strip(), self.max_chars)
        if not text:
            return
        self._task = asyncio.get_running_loop().create_task(self._render(text))

    def cancel_all(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _render(self, text: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            wav = await loop.run_in_executor(None, self.engine.synthesize, text)
            await self.sink(wav)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Speech synthesis failed")


def resolve_tts_engine(settings: Settings) -> Optional[TTSEngine]:
    """Build the deployment's TTS engine once, or None when none is configured."""
    try:
        return create_tts_engine(
            piper_model=settings.piper_model_path,
            elevenlabs_key=settings.elevenlabs_api_key,
            elevenlabs_voice=settings.elevenlabs_voice_id,
        )
    except SynthesisUnavailableError as exc:
        logger.info("Speech synthesis disabled: %s", exc)
        return None


def resolve_synthesis(engine: Optional[TTSEngine], sink: AudioSink) -> SynthesisAdapter:
    """Per-connection adapter around the shared engine."""
    if engine is None:
        return SilentSynthesis()
    return EngineSynthesis(engine, sink)
