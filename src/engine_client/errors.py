"""Error types raised by the engine client.

Transport failures are not wrapped: connection, timeout and TLS errors
surface exactly as ``requests`` raises them. ``TransportError`` is just a
name for their common base class.
"""

import requests


TransportError = requests.exceptions.RequestException


class EngineClientError(Exception):
    """Base class for errors raised by this package."""


class ConfigError(EngineClientError, ValueError):
    """A required client or invocation field is missing or invalid."""


class SpecLookupError(EngineClientError, LookupError):
    """A version, category or operation is not in the loaded specification."""


class SpecUnavailable(SpecLookupError):
    """No specification document could be loaded for a version."""

    def __init__(self, version: str, reason: str = ""):
        message = f"API specification {version!r} is unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.version = version


class ProtocolError(EngineClientError):
    """The engine answered with an HTTP status >= 400."""

    def __init__(self, status: int, body, headers: dict | None = None):
        super().__init__(f"Engine API error {status}: {summarize(body)}")
        self.status = status
        self.body = body
        self.headers = headers or {}


class CallTimeout(requests.exceptions.Timeout):
    """The exchange did not complete within the call deadline."""


def summarize(body) -> str:
    if isinstance(body, dict) and "message" in body:
        return str(body["message"])
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    text = str(body).strip()
    if len(text) > 200:
        return text[:200] + "..."
    return text
