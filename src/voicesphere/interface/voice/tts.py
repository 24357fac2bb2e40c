"""Text-to-speech engines.

Two engines:

1. **Piper TTS**: fast, local, no API key.  Requires the ``piper-tts``
   package and a downloaded voice model (``.onnx`` + ``.json``).
2. **ElevenLabs**: cloud API over httpx, requires an API key.

Both produce 16-bit PCM WAV bytes suitable for browser playback.
"""

from __future__ import annotations

import io
import logging
import wave
from pathlib import Path
from typing import Optional, Protocol

import httpx

from voicesphere.interface.voice.stt import pcm_to_wav

logger = logging.getLogger(__name__)


class SynthesisUnavailableError(RuntimeError):
    """Raised when no TTS engine can be built or used."""


class TTSEngine(Protocol):
    """Protocol that all TTS backends implement."""

    def synthesize(self, text: str) -> bytes:
        """Return WAV audio bytes for the given text."""
        ...

    @property
    def available(self) -> bool:
        """Whether this engine is usable."""
        ...


# ---------------------------------------------------------------------------
# Piper TTS (local)
# ---------------------------------------------------------------------------

class PiperTTS:
    """Local text-to-speech via Piper.

    Parameters
    ----------
    model_path : str or Path
        Path to the Piper ONNX voice model file.
    config_path : str or Path or None
        Path to the model's JSON config.  If None, assumes
        ``{model_path}.json`` exists alongside the model.
    """

    def __init__(
        self,
        model_path: str | Path = "",
        config_path: str | Path | None = None,
    ) -> None:
        self.model_path = Path(model_path) if model_path else None
        self.config_path = Path(config_path) if config_path else None
        self._voice: object = None
        self._available: Optional[bool] = None

    @property
    def available(self) -> bool:
        if self._available is None:
            self._available = (
                self.model_path is not None
                and self.model_path.exists()
                and _piper_installed()
            )
        return self._available

    def _ensure_voice(self) -> None:
        if self._voice is not None:
            return
        from piper import PiperVoice  # type: ignore[import-untyped]

        config = self.config_path or self.model_path.with_suffix(  # type: ignore[union-attr]
            self.model_path.suffix + ".json"  # type: ignore[union-attr]
        )
        self._voice = PiperVoice.load(str(self.model_path), config_path=str(config))
        logger.info("Loaded Piper voice: %s", self.model_path)

    def synthesize(self, text: str) -> bytes:
        """Synthesize text to WAV bytes."""
        if not self.available:
            raise SynthesisUnavailableError(
                "Piper TTS not available; check model path and installation"
            )
        self._ensure_voice()

        buf = io.BytesIO()
        with wave.open(buf, "wb") as wf:
            wf.setnchannels(1)
            wf.setsampwidth(2)
            wf.setframerate(22050)
            self._voice.synthesize(text, wf)  # type: ignore[union-attr]
        return buf.getvalue()


def _piper_installed() -> bool:
    import importlib.util

    return importlib.util.find_spec("piper") is not None


# ---------------------------------------------------------------------------
# ElevenLabs TTS (cloud)
# ---------------------------------------------------------------------------

class ElevenLabsTTS:
    """Cloud text-to-speech via the ElevenLabs API.

    Audio is requested as raw 22.05 kHz PCM and wrapped in a WAV
    container locally.
    """

    _SAMPLE_RATE = 22050

    def __init__(
        self,
        api_key: str = "",
        voice_id: str = "21m00Tcm4TlvDq8ikWAM",  # Rachel
        model_id: str = "eleven_turbo_v2",
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.voice_id = voice_id
        self.model_id = model_id
        self.client = client or httpx.Client(timeout=30.0)

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def synthesize(self, text: str) -> bytes:
        """Synthesize text to WAV bytes via the ElevenLabs API."""
        if not self.available:
            raise SynthesisUnavailableError(
                "ElevenLabs TTS not available; set ELEVENLABS_API_KEY"
            )
        resp = self.client.post(
            f"https://api.elevenlabs.io/v1/text-to-speech/{self.voice_id}",
            params={"output_format": f"pcm_{self._SAMPLE_RATE}"},
            headers={"xi-api-key": self.api_key},
            json={
                "text": text,
                "model_id": self.model_id,
                "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
            },
        )
        resp.raise_for_status()
        return pcm_to_wav(resp.content, sample_rate=self._SAMPLE_RATE)

    def close(self) -> None:
        self.client.close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def create_tts_engine(
    piper_model: str = "",
    elevenlabs_key: str = "",
    elevenlabs_voice: str = "21m00Tcm4TlvDq8ikWAM",
) -> TTSEngine:
    """Create the best available TTS engine.

    Prefers Piper (local) when a model is provided and the library is
    installed, then ElevenLabs when an API key is set.
    """
    if piper_model:
        piper = PiperTTS(model_path=piper_model)
        if piper.available:
            logger.info("Using Piper TTS (local)")
            return piper  # type: ignore[return-value]

    if elevenlabs_key:
        logger.info("Using ElevenLabs TTS (cloud)")
        return ElevenLabsTTS(api_key=elevenlabs_key, voice_id=elevenlabs_voice)  # type: ignore[return-value]

    raise SynthesisUnavailableError(
        "No TTS engine available. Provide a Piper model path or "
        "set ELEVENLABS_API_KEY."
    )
