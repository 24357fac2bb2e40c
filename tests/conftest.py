"""Shared fakes for the relay and session tests, all offline."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from voicesphere.config import Settings


class FakeCompletions:
    """Stands in for ``openai.OpenAI().chat.completions``."""

    def __init__(self, reply="It's sunny.", error=None, choices=None):
        self.reply = reply
        self.error = error
        self.choices = choices
        self.calls: list[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        if self.choices is not None:
            return SimpleNamespace(choices=self.choices)
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeOpenAI:
    def __init__(self, **kwargs):
        self.completions = FakeCompletions(**kwargs)
        self.chat = SimpleNamespace(completions=self.completions)


@pytest.fixture
def make_settings():
    """Build Settings with explicit values (no .env file)."""

    def _make(**overrides) -> Settings:
        values = {
            "VOICESPHERE_LLM_PROVIDER": "openai",
            "OPENAI_API_KEY": "sk-test",
            "VOICESPHERE_LLM_MODEL": "",
            "ANTHROPIC_API_KEY": "",
            "PIPER_MODEL_PATH": "",
            "ELEVENLABS_API_KEY": "",
            "VOICESPHERE_RELAY_URL": "",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def fake_openai():
    """Factory for a fake OpenAI client; see :class:`FakeCompletions`."""
    return FakeOpenAI
