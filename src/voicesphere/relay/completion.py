"""Completion relay: one prompt plus prior turns in, one assistant reply out.

The relay is stateless.  Every call prepends the fixed VoiceSphere persona,
forwards the conversation to the configured provider (OpenAI chat
completions or the Anthropic Messages API) and returns the trimmed text of
the first candidate.  There are no retries: a failed call surfaces
immediately as a typed ``RelayError`` and the caller decides what to do.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Iterable, Optional

from voicesphere.config import Settings, get_settings
from voicesphere.models import Role

logger = logging.getLogger(__name__)

PERSONA = """You are VoiceSphere, an upbeat AI assistant inspired by Siri.
- Speak concisely and clearly.
- Reference the user's context when helpful.
- Offer actionable next steps when the user asks for help.
- Keep the conversation friendly yet professional.
- If you are unsure, say so transparently and suggest an alternative."""

_ALLOWED_ROLES = {Role.USER.value, Role.ASSISTANT.value}


# ======================================================================
# Errors
# ======================================================================
class RelayError(RuntimeError):
    """Base for relay failures.  ``message`` is safe to show to users."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequestError(RelayError):
    """The prompt was empty after trimming."""

    status_code = 400


class UnconfiguredError(RelayError):
    """No credential is configured for the active provider."""


class UpstreamError(RelayError):
    """The completion API failed or returned no usable text."""


# ======================================================================
# Message assembly
# ======================================================================
def _coerce_entry(entry: Any) -> Optional[dict[str, str]]:
    """Return ``{role, content}`` for a usable history entry, else None."""
    if entry is None:
        return None
    if isinstance(entry, Mapping):
        role = entry.get("role")
        content = entry.get("content")
    else:
        role = getattr(entry, "role", None)
        content = getattr(entry, "content", None)
    if isinstance(role, Role):
        role = role.value
    if role not in _ALLOWED_ROLES or not isinstance(content, str):
        return None
    return {"role": role, "content": content}


def build_messages(prompt: str, history: Iterable[Any] = ()) -> list[dict[str, str]]:
    """Build the outgoing message list: persona, usable history, new prompt.

    History entries with an unrecognised role or non-text content are
    dropped; the rest keep their order.
    """
    messages = [{"role": "system", "content": PERSONA}]
    for entry in history:
        message = _coerce_entry(entry)
        if message is not None:
            messages.append(message)
    messages.append({"role": Role.USER.value, "content": prompt})
    return messages


# ======================================================================
# Relay
# ======================================================================
class CompletionRelay:
    """Forward a prompt to the hosted completion API under a fixed persona.

    Usage::

        relay = CompletionRelay()            # reads provider from Settings
        reply = relay.get_reply("Hi!", history=[])

    ``client`` may be supplied to bypass SDK construction; it must expose
    the SDK surface of the active provider.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[object] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client

    @property
    def provider(self) -> str:
        return self.settings.llm_provider

    @property
    def model(self) -> str:
        return self.settings.resolved_llm_model

    @property
    def available(self) -> bool:
        return self.settings.compute_available

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get_reply(self, prompt: Any, history: Optional[Iterable[Any]] = None) -> str:
        """Return the assistant reply for ``prompt`` given prior turns.

        Raises ``UnconfiguredError`` before anything is sent when the
        credential is missing, ``InvalidRequestError`` for a blank prompt
        and ``UpstreamError`` when the API fails or answers with nothing.
        """
        if not self.available:
            key_name = "ANTHROPIC_API_KEY" if self.provider == "anthropic" else "OPENAI_API_KEY"
            raise UnconfiguredError(f"The assistant is not configured. Set {key_name}.")

        text = prompt.strip() if isinstance(prompt, str) else ""
        if not text:
            raise InvalidRequestError("Please provide a prompt.")

        messages = build_messages(text, history or ())
        logger.debug("Relaying prompt with %d messages to %s", len(messages), self.provider)

        if self.provider == "anthropic":
            raw = self._complete_anthropic(messages)
        else:
            raw = self._complete_openai(messages)

        reply = (raw or "").strip()
        if not reply:
            raise UpstreamError("The assistant could not craft a reply.")
        return reply

    # ------------------------------------------------------------------
    # OpenAI backend
    # ------------------------------------------------------------------
    def _get_openai_client(self):  # -> openai.OpenAI
        if self._client is None:
            from openai import OpenAI

            self._client = OpenAI(
                api_key=self.settings.openai_api_key,
                base_url=self.settings.llm_base_url or None,
            )
        return self._client

    def _complete_openai(self, messages: list[dict[str, str]]) -> str:
        try:
            client = self._get_openai_client()
            response = client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.settings.temperature,
                max_tokens=self.settings.max_tokens,
                n=1,
            )
            if not response.choices:
                return ""
            return response.choices[0].message.content or ""
        except Exception as exc:
            logger.exception("OpenAI completion call failed")
            raise UpstreamError("Failed to process that request.") from exc

    # ------------------------------------------------------------------
    # Anthropic backend
    # ------------------------------------------------------------------
    def _get_anthropic_client(self):  # -> anthropic.Anthropic
        if self._client is None:
            import anthropic

            self._client = anthropic.Anthropic(api_key=self.settings.anthropic_api_key)
        return self._client

    def _complete_anthropic(self, messages: list[dict[str, str]]) -> str:
        system, conversation = messages[0]["content"], messages[1:]
        try:
            client = self._get_anthropic_client()
            response = client.messages.create(
                model=self.model,
                max_tokens=self.settings.max_tokens,
                system=system,
                messages=conversation,
                temperature=self.settings.temperature,
            )
            # Anthropic response: list of content blocks
            parts = []
            for block in response.content:
                if block.type == "text":
                    parts.append(block.text)
            return "\n".join(parts)
        except Exception as exc:
            logger.exception("Anthropic completion call failed")
            raise UpstreamError("Failed to process that request.") from exc
