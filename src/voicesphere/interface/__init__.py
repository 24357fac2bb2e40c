"""Voice interface layer for VoiceSphere.

Provides speech capture (Whisper STT), speech synthesis (Piper/ElevenLabs
TTS), the conversation session controller and a WebSocket bridge that
serves one session per connected client.

Data flow::

    Microphone → capture → pending transcript
      → SessionController.submit_query
      → Completion relay (persona + history + prompt)
      → assistant turn → synthesis → audio
"""

from voicesphere.interface.session import SessionController

__all__ = [
    "SessionController",
]
