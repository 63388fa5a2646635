"""Request dispatch and response classification.

``fetch`` executes one resolved request on a connection context and hands
back exactly one of three handles, chosen by the response mode:

- ``data``: the body is drained and decoded as JSON where possible,
  otherwise returned as text (or bytes when it is not UTF-8).
- ``stream``: the undrained response. The caller reads and closes it.
- ``socket``: the upgraded connection's socket, for interactive attach and
  exec sessions. The caller owns it and must close it.

HTTP error statuses only raise when asked to (``throw_on_error``).
Transport errors always propagate as requests raised them.
"""

import json
import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Iterator, Literal
from urllib.parse import quote, urlencode

import requests

from engine_client.errors import CallTimeout, ConfigError, ProtocolError, summarize
from engine_client.frames import Frame, read_frames
from engine_client.params import RequestParams
from engine_client.spec.base import Endpoint
from engine_client.transport.connect import ConnectionContext

logger = logging.getLogger(__name__)

ResponseMode = Literal["data", "stream", "socket"]
RESPONSE_MODES = ("data", "stream", "socket")

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ResolvedRequest:
    method: str
    path: str  # substituted, version-prefixed
    query: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, Any] = field(default_factory=dict)
    body: Any = None


def resolve_request(endpoint: Endpoint, params: RequestParams, api_version: str | None = None) -> ResolvedRequest:
    """Combine an endpoint with partitioned parameters."""
    path = substitute_path(endpoint.path, params.path)
    if api_version:
        path = f"/{api_version.strip('/')}{path}"
    return ResolvedRequest(
        method=endpoint.method,
        path=path,
        query=dict(params.query),
        headers=dict(params.header),
        body=params.body_value(),
    )


def substitute_path(template: str, values: dict[str, Any]) -> str:
    """Fill ``{name}`` slots in a path template.

    Slots without a value are left as they are.
    """
    path = template
    for name, value in values.items():
        path = path.replace("{" + name + "}", quote(_wire_value(value), safe="/:"))
    return path


def build_url(base_url: str, request: ResolvedRequest) -> str:
    url = base_url.rstrip("/") + request.path
    if request.query:
        url += "?" + urlencode({k: _wire_value(v) for k, v in request.query.items()})
    return url


def _wire_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(value)


def _is_byte_source(value: Any) -> bool:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return True
    if hasattr(value, "read"):
        return True
    # Generators and other iterators of byte chunks; lists and dicts are documents.
    return hasattr(value, "__next__")


def encode_body(body: Any, headers: dict[str, str]) -> Any:
    """Return request data for ``body``, setting Content-Type in ``headers``.

    Byte sources are handed to requests untouched so large uploads are
    streamed. Anything else is serialized as JSON.
    """
    if body is None:
        return None
    if _is_byte_source(body):
        headers.setdefault("Content-Type", "application/octet-stream")
        return body
    headers.setdefault("Content-Type", "application/json")
    return json.dumps(body).encode("utf-8")


def decode_body(raw: bytes) -> Any:
    """Decode a drained body as JSON, falling back to the raw payload."""
    if not raw:
        return None
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class _Deadline:
    def __init__(self, seconds: float):
        self.seconds = seconds
        self.expires = time.monotonic() + seconds

    def check(self) -> None:
        if time.monotonic() > self.expires:
            raise CallTimeout(f"call did not complete within {self.seconds}s")


@dataclass
class DataResponse:
    status: int
    headers: dict[str, str]
    value: Any

    @property
    def ok(self) -> bool:
        return self.status < 400


@dataclass
class StreamResponse:
    """An open response body. Close it (or use ``with``) when done."""

    status: int
    headers: dict[str, str]
    response: requests.Response
    owner: ConnectionContext | None = None

    @property
    def ok(self) -> bool:
        return self.status < 400

    @property
    def raw(self):
        """The underlying file-like byte source."""
        return self.response.raw

    def read(self, size: int = -1) -> bytes:
        return self.response.raw.read(None if size < 0 else size)

    def iter_content(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        return self.response.iter_content(chunk_size=chunk_size)

    def iter_lines(self) -> Iterator[bytes]:
        return self.response.iter_lines()

    def frames(self) -> Iterator[Frame]:
        return read_frames(self.response.raw)

    def close(self) -> None:
        self.response.close()
        if self.owner is not None:
            self.owner.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


@dataclass
class SocketResponse:
    """A hijacked, full-duplex connection to the engine.

    Reads go through the response's buffered reader, because bytes that
    arrived together with the response headers are already buffered there.
    Writes go straight to the socket.
    """

    status: int
    headers: dict[str, str]
    sock: Any  # socket.socket or ssl.SSLSocket
    reader: Any
    response: requests.Response
    owner: ConnectionContext | None = None

    def send(self, data: bytes) -> int:
        return self.sock.send(data)

    def sendall(self, data: bytes) -> None:
        self.sock.sendall(data)

    def recv(self, size: int = CHUNK_SIZE) -> bytes:
        return self.reader.read1(size)

    def read(self, size: int = -1) -> bytes:
        return self.reader.read(size)

    def frames(self) -> Iterator[Frame]:
        return read_frames(self.reader)

    def settimeout(self, seconds: float | None) -> None:
        self.sock.settimeout(seconds)

    def shutdown_write(self) -> None:
        """Signal end of input (e.g. stdin EOF) while still reading output."""
        self.sock.shutdown(socket.SHUT_WR)

    def close(self) -> None:
        # The http.client response still holds the reader; it must close first.
        try:
            self.response.close()
        finally:
            try:
                self.sock.close()
                self.reader.close()
            finally:
                if self.owner is not None:
                    self.owner.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


ResponseHandle = DataResponse | StreamResponse | SocketResponse


def _hijack(response: requests.Response):
    # requests -> urllib3 HTTPResponse -> http.client HTTPResponse -> buffered reader -> SocketIO
    reader = response.raw._fp.fp
    return reader, reader.raw._sock


def fetch(
    request: ResolvedRequest,
    context: ConnectionContext,
    mode: ResponseMode = "data",
    throw_on_error: bool = False,
    throw_full_message: bool = False,
    owns_context: bool = False,
) -> ResponseHandle:
    """Execute ``request`` and classify the response by ``mode``.

    With ``owns_context`` the context is closed once the exchange is over:
    immediately for data mode and on error, otherwise when the returned
    handle is closed.
    """
    if mode not in RESPONSE_MODES:
        raise ConfigError(f"response mode must be one of {RESPONSE_MODES}, got {mode!r}")

    try:
        handle = _exchange(request, context, mode, throw_on_error, throw_full_message, owns_context)
    except BaseException:
        if owns_context:
            context.close()
        raise
    if owns_context and isinstance(handle, DataResponse):
        context.close()
    return handle


def _exchange(request, context, mode, throw_on_error, throw_full_message, owns_context):
    timeouts = context.timeouts
    deadline = _Deadline(timeouts.call)
    url = build_url(context.base_url, request)

    headers = {k: _wire_value(v) for k, v in request.headers.items()}
    data = encode_body(request.body, headers)
    if mode == "socket":
        headers.setdefault("Connection", "Upgrade")
        headers.setdefault("Upgrade", "tcp")

    logger.debug("%s %s (as %s)", request.method, url, mode)
    response = context.session.request(
        request.method,
        url,
        data=data,
        headers=headers,
        stream=True,
        timeout=(timeouts.connect, min(timeouts.read, timeouts.call)),
    )
    logger.debug("%s %s -> %d", request.method, url, response.status_code)
    status = response.status_code
    response_headers = dict(response.headers)

    try:
        deadline.check()
        if throw_on_error and status >= 400:
            body = decode_body(_drain(response, deadline))
            raise ProtocolError(status, body if throw_full_message else summarize(body), response_headers)
    except BaseException:
        response.close()
        raise

    owner = context if owns_context else None
    if mode == "stream":
        return StreamResponse(status, response_headers, response, owner)
    if mode == "socket":
        reader, sock = _hijack(response)
        return SocketResponse(status, response_headers, sock, reader, response, owner)

    try:
        raw = _drain(response, deadline)
    finally:
        response.close()
    return DataResponse(status, response_headers, decode_body(raw))


def _drain(response: requests.Response, deadline: _Deadline) -> bytes:
    chunks = []
    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
        chunks.append(chunk)
        deadline.check()
    return b"".join(chunks)
