from voicesphere.relay.completion import (
    PERSONA,
    CompletionRelay,
    InvalidRequestError,
    RelayError,
    UnconfiguredError,
    UpstreamError,
    build_messages,
)

__all__ = [
    "PERSONA",
    "CompletionRelay",
    "InvalidRequestError",
    "RelayError",
    "UnconfiguredError",
    "UpstreamError",
    "build_messages",
]
