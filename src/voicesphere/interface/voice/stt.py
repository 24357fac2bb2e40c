"""Whisper speech-to-text engine backing the capture adapter.

Two interchangeable backends may be installed:

1. **faster-whisper** (``pip install faster-whisper``): CTranslate2-based,
   preferred.
2. **openai-whisper** (``pip install openai-whisper``): reference
   implementation, requires ``ffmpeg``.

Which one exists is probed once, at construction, without importing the
heavy native libraries.  When neither is present the engine reports
``available == False`` and the session falls back to unsupported capture.
"""

from __future__ import annotations

import importlib.util
import io
import logging
import struct
import tempfile
import wave
from pathlib import Path

logger = logging.getLogger(__name__)


class TranscriptionError(RuntimeError):
    """Raised when the backend fails on a segment it was able to load."""


# ---------------------------------------------------------------------------
# Backend detection
# ---------------------------------------------------------------------------


def _detect_backend() -> str:
    """Detect which Whisper backend is installed.

    Uses ``importlib.util.find_spec`` so detection never pays for loading
    CUDA or other native libraries; the real import happens lazily in
    :meth:`WhisperSTT._ensure_model`.
    """
    if importlib.util.find_spec("faster_whisper") is not None:
        logger.info("STT backend: faster-whisper")
        return "faster_whisper"

    if importlib.util.find_spec("whisper") is not None:
        logger.info("STT backend: openai-whisper")
        return "openai_whisper"

    logger.warning(
        "No Whisper backend found. Install faster-whisper or openai-whisper. "
        "Speech capture will be unavailable."
    )
    return "none"


# ---------------------------------------------------------------------------
# Audio helpers
# ---------------------------------------------------------------------------

def pcm_to_wav(pcm_bytes: bytes, sample_rate: int = 16000, channels: int = 1) -> bytes:
    """Wrap raw 16-bit PCM in a WAV container."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(2)  # 16-bit
        wf.setframerate(sample_rate)
        wf.writeframes(pcm_bytes)
    return buf.getvalue()


def _is_wav(data: bytes) -> bool:
    """Check if data starts with a RIFF/WAVE header."""
    return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WAVE"


def _compute_rms(audio_bytes: bytes) -> float:
    """Compute RMS amplitude of 16-bit PCM samples."""
    n_samples = len(audio_bytes) // 2
    if n_samples == 0:
        return 0.0
    samples = struct.unpack(f"<{n_samples}h", audio_bytes[:n_samples * 2])
    mean_sq = sum(s * s for s in samples) / n_samples
    return mean_sq ** 0.5


# Segments quieter than this RMS are treated as silence and not transcribed.
_SILENCE_RMS_THRESHOLD = 50.0


# ---------------------------------------------------------------------------
# Whisper STT
# ---------------------------------------------------------------------------

class WhisperSTT:
    """Local Whisper speech-to-text engine.

    Parameters
    ----------
    model_size : str
        ``tiny``, ``base``, ``small``, ``medium`` or ``large-v3``.
    device : str
        ``cuda`` or ``cpu``.  ``auto`` picks GPU if available.
    language : str
        ISO language code passed to the backend.
    """

    def __init__(
        self,
        model_size: str = "base",
        device: str = "auto",
        language: str = "en",
    ) -> None:
        self.model_size = model_size
        self.device = device
        self.language = language
        self._model: object = None
        self._backend = _detect_backend()

    @property
    def available(self) -> bool:
        """Whether a Whisper backend is installed."""
        return self._backend != "none"

    def _resolve_device(self) -> str:
        if self.device != "auto":
            return self.device
        try:
            import torch
        except ImportError:
            return "cpu"
        return "cuda" if torch.cuda.is_available() else "cpu"

    def _ensure_model(self) -> None:
        """Lazy-load the model on first use."""
        if self._model is not None:
            return

        device = self._resolve_device()
        if self._backend == "faster_whisper":
            from faster_whisper import WhisperModel  # type: ignore[import-untyped]

            compute_type = "float16" if device == "cuda" else "int8"
            self._model = WhisperModel(
                self.model_size, device=device, compute_type=compute_type
            )
            logger.info(
                "Loaded faster-whisper %s on %s (%s)",
                self.model_size, device, compute_type,
            )
        elif self._backend == "openai_whisper":
            import whisper  # type: ignore[import-untyped]

            self._model = whisper.load_model(self.model_size, device=device)
            logger.info("Loaded openai-whisper %s on %s", self.model_size, device)

    def transcribe(self, audio: bytes, sample_rate: int = 16000) -> str:
        """Transcribe one speech segment.

        ``audio`` is raw 16-bit PCM or WAV.  Silence and an unavailable
        backend yield an empty string; backend failures raise
        ``TranscriptionError``.
        """
        if not self.available:
            return ""

        wav_data = audio if _is_wav(audio) else pcm_to_wav(audio, sample_rate=sample_rate)
        pcm_payload = audio[44:] if _is_wav(audio) else audio
        if _compute_rms(pcm_payload) < _SILENCE_RMS_THRESHOLD:
            return ""

        # Both backends prefer file paths.
        with tempfile.NamedTemporaryFile(suffix=".wav", delete=False) as tmp:
            tmp.write(wav_data)
            tmp_path = Path(tmp.name)

        try:
            self._ensure_model()
            if self._backend == "faster_whisper":
                segments, _ = self._model.transcribe(  # type: ignore[union-attr]
                    str(tmp_path), language=self.language, beam_size=5
                )
                return " ".join(seg.text.strip() for seg in segments).strip()
            result = self._model.transcribe(  # type: ignore[union-attr]
                str(tmp_path), language=self.language
            )
            return result.get("text", "").strip()
        except Exception as exc:
            logger.exception("Whisper transcription failed")
            raise TranscriptionError(str(exc) or type(exc).__name__) from exc
        finally:
            tmp_path.unlink(missing_ok=True)
