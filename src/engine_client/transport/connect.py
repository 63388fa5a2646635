"""Connection descriptors and the two transport variants.

``connect()`` turns a ``ConnectionDescriptor`` into a ``ConnectionContext``:
a requests session wired for either a local Unix socket or TCP (optionally
TLS or mutual TLS), plus the base URL and timeouts to use with it. Failures
while connecting come straight from requests and are never re-wrapped.
"""

from dataclasses import dataclass
from urllib.parse import urlsplit

import requests
from pydantic import BaseModel, ConfigDict

from engine_client.errors import ConfigError

from .unix import PLACEHOLDER_HOST, UNIX_SCHEME, TcpAdapter, UnixAdapter

# Seconds. Unset timeouts take these values, never "wait forever".
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 60.0
DEFAULT_WRITE_TIMEOUT = 60.0
DEFAULT_CALL_TIMEOUT = 300.0


class MtlsMaterial(BaseModel):
    """PEM file paths for mutual TLS."""

    model_config = ConfigDict(frozen=True)

    ca: str
    cert: str
    key: str


class ConnectionDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    uri: str  # unix:///var/run/docker.sock, http://host:2375, https://host:2376
    connect_timeout: float | None = None
    read_timeout: float | None = None
    write_timeout: float | None = None
    call_timeout: float | None = None
    mtls: MtlsMaterial | None = None


@dataclass(frozen=True)
class Timeouts:
    connect: float = DEFAULT_CONNECT_TIMEOUT
    read: float = DEFAULT_READ_TIMEOUT
    write: float = DEFAULT_WRITE_TIMEOUT
    call: float = DEFAULT_CALL_TIMEOUT

    @classmethod
    def from_descriptor(cls, conn: ConnectionDescriptor) -> "Timeouts":
        return cls(
            connect=_or_default(conn.connect_timeout, DEFAULT_CONNECT_TIMEOUT),
            read=_or_default(conn.read_timeout, DEFAULT_READ_TIMEOUT),
            write=_or_default(conn.write_timeout, DEFAULT_WRITE_TIMEOUT),
            call=_or_default(conn.call_timeout, DEFAULT_CALL_TIMEOUT),
        )

    @property
    def requests_timeout(self) -> tuple[float, float]:
        return (self.connect, self.read)


def _or_default(value: float | None, default: float) -> float:
    if value is None:
        return default
    if value <= 0:
        raise ConfigError(f"timeouts must be positive, got {value}")
    return value


@dataclass(frozen=True)
class LocalTransport:
    """A Unix domain socket at a fixed filesystem path."""

    socket_path: str

    @property
    def base_url(self) -> str:
        return f"{UNIX_SCHEME}://{PLACEHOLDER_HOST}"

    def mount(self, session: requests.Session, timeouts: Timeouts) -> None:
        session.mount(f"{UNIX_SCHEME}://", UnixAdapter(self.socket_path, timeouts.connect, timeouts.write))


@dataclass(frozen=True)
class RemoteTransport:
    """TCP to ``host:port``, with TLS when ``tls`` is set."""

    host: str
    port: int
    tls: bool = False
    mtls: MtlsMaterial | None = None

    @property
    def base_url(self) -> str:
        scheme = "https" if self.tls else "http"
        return f"{scheme}://{self.host}:{self.port}"

    def mount(self, session: requests.Session, timeouts: Timeouts) -> None:
        adapter = TcpAdapter(write_timeout=timeouts.write)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        if self.mtls is not None:
            # Trust only the supplied CA; no fallback to the system store.
            session.verify = self.mtls.ca
            session.cert = (self.mtls.cert, self.mtls.key)


Transport = LocalTransport | RemoteTransport


@dataclass
class ConnectionContext:
    """A ready-to-use session bound to one transport."""

    transport: Transport
    session: requests.Session
    timeouts: Timeouts

    @property
    def base_url(self) -> str:
        return self.transport.base_url

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def transport_for(conn: ConnectionDescriptor) -> Transport:
    """Pick the transport variant for a descriptor's URI scheme."""
    parts = urlsplit(conn.uri)
    scheme = parts.scheme.lower()

    if scheme in ("unix", "http+unix"):
        path = parts.path or parts.netloc
        if not path:
            raise ConfigError(f"unix URI has no socket path: {conn.uri!r}")
        return LocalTransport(path)

    if scheme in ("http", "https", "tcp"):
        if not parts.hostname:
            raise ConfigError(f"URI has no host: {conn.uri!r}")
        tls = scheme == "https" or (scheme == "tcp" and conn.mtls is not None)
        port = parts.port or (2376 if tls else 2375)
        return RemoteTransport(parts.hostname, port, tls=tls, mtls=conn.mtls)

    raise ConfigError(f"unsupported URI scheme {parts.scheme!r} in {conn.uri!r}")


def connect(conn: ConnectionDescriptor) -> ConnectionContext:
    """Build a connection context for a descriptor.

    No network activity happens here. The first request opens the channel,
    and any connection, timeout or TLS handshake error it raises is the one
    requests raised.
    """
    if conn is None or not conn.uri:
        raise ConfigError("connection descriptor with a 'uri' is required")

    transport = transport_for(conn)
    if conn.mtls is not None and isinstance(transport, RemoteTransport) and not transport.tls:
        raise ConfigError("mtls material requires an https:// or tcp:// URI")

    timeouts = Timeouts.from_descriptor(conn)
    session = requests.Session()
    # Trust, proxies and CA bundles come from the descriptor only.
    session.trust_env = False
    transport.mount(session, timeouts)
    return ConnectionContext(transport=transport, session=session, timeouts=timeouts)
