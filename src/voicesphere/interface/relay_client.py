"""Clients the voice session uses to reach the completion relay."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, Sequence

import httpx

from voicesphere.models import Turn
from voicesphere.relay.completion import CompletionRelay, RelayError

logger = logging.getLogger(__name__)


class RelayRequestError(RelayError):
    """The relay endpoint answered with a non-success status."""

    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.status_code = status_code


class ReplySource(Protocol):
    async def fetch_reply(self, prompt: str, history: Sequence[Turn]) -> str:
        ...


class LocalRelayClient:
    """Call a :class:`CompletionRelay` in-process.

    The relay SDK call blocks, so it runs in the default executor.
    """

    def __init__(self, relay: Optional[CompletionRelay] = None) -> None:
        self.relay = relay or CompletionRelay()

    async def fetch_reply(self, prompt: str, history: Sequence[Turn]) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.relay.get_reply, prompt, list(history))


class HttpRelayClient:
    """Call a relay exposed at ``{base_url}/api/chat``."""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=60.0)

    async def fetch_reply(self, prompt: str, history: Sequence[Turn]) -> str:
        try:
            resp = await self.client.post(
                f"{self.base_url}/api/chat",
                json={
                    "prompt": prompt,
                    "history": [turn.to_message() for turn in history],
                },
            )
        except httpx.HTTPError as exc:
            logger.warning("Relay request to %s failed: %s", self.base_url, exc)
            raise RelayRequestError(str(exc) or "Something went wrong") from exc
        if resp.is_error:
            raise RelayRequestError(_error_message(resp), status_code=resp.status_code)
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        reply = payload.get("reply") if isinstance(payload, dict) else None
        if not isinstance(reply, str):
            raise RelayRequestError("The relay returned an invalid reply.")
        return reply

    async def aclose(self) -> None:
        await self.client.aclose()


def _error_message(resp: httpx.Response) -> str:
    """Best human-readable message from an error response."""
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return resp.text or "Something went wrong"
