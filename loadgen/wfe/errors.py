from __future__ import annotations


class LoadGeneratorError(Exception):
    """Base class for failures raised while generating load."""


class TransportError(LoadGeneratorError):
    """Raised when a request fails at the network or TLS layer."""


class ProtocolError(LoadGeneratorError):
    """Raised when a response is missing something the caller relies on."""


class MissingNonceError(ProtocolError):
    def __init__(self, url: str) -> None:
        super().__init__(f"Replay-Nonce header not supplied by {url}")
        self.url = url


class UnexpectedStatusError(ProtocolError):
    def __init__(self, call_class: str, expected: int, actual: int, body: str = "") -> None:
        message = f"{call_class}: expected status {expected}, got {actual}"
        if body:
            message = f"{message} ({body[:200]})"
        super().__init__(message)
        self.call_class = call_class
        self.expected = expected
        self.actual = actual


class ParseError(LoadGeneratorError):
    """Raised when persisted state cannot be decoded."""


class ProcessError(LoadGeneratorError):
    """Raised when the companion challenge server cannot be started or stopped."""


__all__ = [
    "LoadGeneratorError",
    "MissingNonceError",
    "ParseError",
    "ProcessError",
    "ProtocolError",
    "TransportError",
    "UnexpectedStatusError",
]
