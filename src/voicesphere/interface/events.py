"""Tagged capture events delivered into the session controller.

Capture backends report progress through these three variants instead of
ad-hoc callbacks, so every transition is driven from the controller's
single event loop.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

# Error code a capture backend reports when microphone permission is refused.
PERMISSION_DENIED = "not-allowed"


@dataclass(frozen=True)
class CapturePartial:
    """Latest cumulative recognition text for the current capture."""

    text: str


@dataclass(frozen=True)
class CaptureFinalized:
    """The capture ended; whatever text is pending is final."""


@dataclass(frozen=True)
class CaptureFailed:
    """The capture backend reported a runtime error."""

    code: str
    detail: str = ""

    @property
    def permission_denied(self) -> bool:
        return self.code == PERMISSION_DENIED


CaptureEvent = Union[CapturePartial, CaptureFinalized, CaptureFailed]
