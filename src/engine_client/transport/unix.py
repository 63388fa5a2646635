"""HTTP over a Unix domain socket for requests.

Connections made here ignore the host in the request URL and always
connect to one filesystem path, so no name resolution ever happens. The
URL still needs an authority for requests and urllib3 to be happy. The
transport uses a placeholder that is never resolved.
"""

import socket
import threading

import requests.adapters
import urllib3.connection
import urllib3.connectionpool
import urllib3.poolmanager

UNIX_SCHEME = "http+unix"
PLACEHOLDER_HOST = "engine.sock"


class _WriteTimeoutMixin:
    """Applies a separate timeout while a request is being sent.

    urllib3 switches the socket to the read timeout before it waits for
    the response, so the write timeout only covers sending.
    """

    write_timeout: float | None = None

    def _apply_write_timeout(self):
        if self.sock is not None and self.write_timeout is not None:
            self.sock.settimeout(self.write_timeout)

    def connect(self):
        super().connect()
        self._apply_write_timeout()

    def request(self, *args, **kwargs):
        self._apply_write_timeout()
        return super().request(*args, **kwargs)


class UnixHTTPConnection(_WriteTimeoutMixin, urllib3.connection.HTTPConnection):
    """HTTPConnection that connects to a Unix socket path."""

    def __init__(self, socket_path: str, timeout: float):
        super().__init__(PLACEHOLDER_HOST, timeout=timeout)
        self.socket_path = socket_path

    def connect(self):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path)
        except OSError:
            sock.close()
            raise
        self.sock = sock
        self._apply_write_timeout()


class UnixHTTPConnectionPool(urllib3.connectionpool.HTTPConnectionPool):
    def __init__(self, socket_path: str, timeout: float, write_timeout: float | None = None, maxsize: int = 1):
        super().__init__(PLACEHOLDER_HOST, timeout=timeout, maxsize=maxsize)
        self.socket_path = socket_path
        self.connect_timeout = timeout
        self.write_timeout = write_timeout

    def _new_conn(self):
        conn = UnixHTTPConnection(self.socket_path, timeout=self.connect_timeout)
        conn.write_timeout = self.write_timeout
        return conn


class UnixAdapter(requests.adapters.HTTPAdapter):
    """Transport adapter serving ``http+unix://`` URLs from one socket path."""

    def __init__(self, socket_path: str, connect_timeout: float, write_timeout: float | None = None):
        self.socket_path = socket_path
        self.connect_timeout = connect_timeout
        self.write_timeout = write_timeout
        self._pool = None
        self._pool_lock = threading.Lock()
        super().__init__()

    def get_connection(self, url, proxies=None):
        with self._pool_lock:
            if self._pool is None:
                self._pool = UnixHTTPConnectionPool(
                    self.socket_path, timeout=self.connect_timeout, write_timeout=self.write_timeout
                )
            return self._pool

    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return self.get_connection(request.url, proxies)

    def request_url(self, request, proxies):
        # Proxies make no sense for a local socket, and requests' proxy
        # selection chokes on the placeholder authority.
        return request.path_url

    def close(self):
        with self._pool_lock:
            if self._pool is not None:
                self._pool.close()
                self._pool = None
        super().close()


class TimedHTTPConnection(_WriteTimeoutMixin, urllib3.connection.HTTPConnection):
    pass


class TimedHTTPSConnection(_WriteTimeoutMixin, urllib3.connection.HTTPSConnection):
    pass


class TimedHTTPConnectionPool(urllib3.connectionpool.HTTPConnectionPool):
    ConnectionCls = TimedHTTPConnection
    write_timeout = None

    def _new_conn(self):
        conn = super()._new_conn()
        conn.write_timeout = self.write_timeout
        return conn


class TimedHTTPSConnectionPool(urllib3.connectionpool.HTTPSConnectionPool):
    ConnectionCls = TimedHTTPSConnection
    write_timeout = None

    def _new_conn(self):
        conn = super()._new_conn()
        conn.write_timeout = self.write_timeout
        return conn


class TimedPoolManager(urllib3.poolmanager.PoolManager):
    def __init__(self, *args, write_timeout: float | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.write_timeout = write_timeout
        self.pool_classes_by_scheme = {"http": TimedHTTPConnectionPool, "https": TimedHTTPSConnectionPool}

    def _new_pool(self, scheme, host, port, request_context=None):
        pool = super()._new_pool(scheme, host, port, request_context)
        pool.write_timeout = self.write_timeout
        return pool


class TcpAdapter(requests.adapters.HTTPAdapter):
    """Standard HTTP(S) adapter whose connections honour a write timeout."""

    def __init__(self, write_timeout: float | None = None, **kwargs):
        self.write_timeout = write_timeout
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        self._pool_connections = connections
        self._pool_maxsize = maxsize
        self._pool_block = block
        self.poolmanager = TimedPoolManager(
            num_pools=connections,
            maxsize=maxsize,
            block=block,
            write_timeout=self.write_timeout,
            **pool_kwargs,
        )
