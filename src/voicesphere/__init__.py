"""VoiceSphere: a voice chat assistant built on a hosted completion API."""

__version__ = "0.1.0"
