import json
import os
import re
import shutil
import socketserver
import ssl
import struct
import subprocess
import tempfile
import threading
from http.server import BaseHTTPRequestHandler
from pathlib import Path

import pytest

from engine_client.spec.index import SpecIndex
from engine_client.spec.loader import SpecLoader

FIXTURES = Path(__file__).parent / "fixtures"


def make_frame(stream: int, payload: bytes) -> bytes:
    return struct.pack(">BxxxI", stream, len(payload)) + payload


class FakeEngineHandler(BaseHTTPRequestHandler):
    """A tiny stand-in for the engine API, enough to exercise every response mode."""

    protocol_version = "HTTP/1.1"

    def log_message(self, format, *args):
        pass

    def _record(self, body: bytes = b""):
        self.server.requests.append({
            "method": self.command,
            "path": self.path,
            "headers": dict(self.headers),
            "body": body,
        })

    def _read_body(self) -> bytes:
        if self.headers.get("Transfer-Encoding", "").lower() == "chunked":
            parts = []
            while True:
                size = int(self.rfile.readline().strip(), 16)
                if size == 0:
                    self.rfile.readline()
                    break
                parts.append(self.rfile.read(size))
                self.rfile.readline()
            return b"".join(parts)
        length = int(self.headers.get("Content-Length") or 0)
        return self.rfile.read(length) if length else b""

    def _send(self, status: int, body: bytes, content_type: str = "application/json"):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_json(self, status: int, value):
        self._send(status, json.dumps(value).encode())

    def _route(self):
        path = re.sub(r"^/v[0-9.]+", "", self.path.split("?", 1)[0])
        body = self._read_body()
        self._record(body)

        if path == "/_ping":
            return self._send(200, b"OK", "text/plain")
        if path == "/containers/json":
            return self._send_json(200, [{"Id": "abc123", "Names": ["/conny"]}])
        if path == "/containers/create":
            return self._send_json(201, {"Id": "abc123", "Warnings": []})
        if path == "/images/json":
            return self._send(200, b"not {json", "text/plain")
        if path == "/images/create":
            return self._send(200, b"\xff\xfe raw", "application/octet-stream")

        m = re.match(r"^/containers/([^/]+)/(json|logs|attach|archive)$", path)
        if m is None:
            return self._send_json(404, {"message": f"page not found: {path}"})
        container, action = m.groups()
        if container == "missing":
            return self._send_json(404, {"message": "No such container: missing"})
        if action == "json":
            return self._send_json(200, {"Id": container, "State": {"Running": True}})
        if action == "archive":
            return self._send(200, b"", "text/plain")
        if action == "logs":
            return self._stream_logs()
        return self._attach()

    def _stream_logs(self):
        self.send_response(200)
        self.send_header("Content-Type", "application/vnd.docker.multiplexed-stream")
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(make_frame(1, b"hello\n"))
        self.wfile.write(make_frame(2, b"oops\n"))
        self.close_connection = True

    def _attach(self):
        self.send_response(101, "UPGRADED")
        self.send_header("Content-Type", "application/vnd.docker.multiplexed-stream")
        self.send_header("Connection", "Upgrade")
        self.send_header("Upgrade", "tcp")
        self.end_headers()
        self.wfile.write(make_frame(1, b"ready\n"))
        while True:
            data = self.rfile.read1(4096)
            if not data:
                break
            self.wfile.write(make_frame(1, data))
        self.close_connection = True

    do_GET = _route
    do_POST = _route
    do_PUT = _route
    do_DELETE = _route


class UnixEngineServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True
    block_on_close = False

    def __init__(self, path: str):
        super().__init__(path, FakeEngineHandler)
        self.requests = []


@pytest.fixture
def spec_index():
    return SpecIndex(SpecLoader(spec_dir=FIXTURES), default_version="v1.41")


@pytest.fixture
def engine_socket():
    """A fake engine listening on a Unix socket; yields (socket path, server)."""
    tmpdir = tempfile.mkdtemp(prefix="engine-")
    path = os.path.join(tmpdir, "engine.sock")
    server = UnixEngineServer(path)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield path, server
    finally:
        server.shutdown()
        server.server_close()
        shutil.rmtree(tmpdir, ignore_errors=True)


_CA_CONFIG = """\
[req]
distinguished_name = dn
prompt = no
x509_extensions = v3_ca
[dn]
CN = {name}
[v3_ca]
basicConstraints = critical,CA:TRUE
keyUsage = critical,keyCertSign,cRLSign
subjectKeyIdentifier = hash
authorityKeyIdentifier = keyid:always
"""

_LEAF_EXTENSIONS = """\
basicConstraints = CA:FALSE
keyUsage = critical,digitalSignature,keyEncipherment
extendedKeyUsage = {usage}
subjectAltName = IP:127.0.0.1
subjectKeyIdentifier = hash
authorityKeyIdentifier = keyid,issuer
"""


def _openssl(*args: str) -> None:
    subprocess.run(["openssl", *args], check=True, capture_output=True)


def _make_ca(directory: Path, name: str) -> tuple[Path, Path]:
    config = directory / f"{name}.cnf"
    config.write_text(_CA_CONFIG.format(name=name), encoding="utf-8")
    cert, key = directory / f"{name}.pem", directory / f"{name}.key"
    _openssl("req", "-x509", "-new", "-newkey", "rsa:2048", "-nodes", "-days", "1",
             "-config", str(config), "-keyout", str(key), "-out", str(cert))
    return cert, key


def _make_leaf(directory: Path, name: str, ca: tuple[Path, Path], usage: str) -> tuple[Path, Path]:
    ext = directory / f"{name}.ext"
    ext.write_text(_LEAF_EXTENSIONS.format(usage=usage), encoding="utf-8")
    cert, key, csr = directory / f"{name}.pem", directory / f"{name}.key", directory / f"{name}.csr"
    _openssl("req", "-new", "-newkey", "rsa:2048", "-nodes", "-subj", f"/CN={name}",
             "-keyout", str(key), "-out", str(csr))
    _openssl("x509", "-req", "-in", str(csr), "-CA", str(ca[0]), "-CAkey", str(ca[1]),
             "-CAserial", str(directory / f"{ca[0].stem}.srl"), "-CAcreateserial",
             "-days", "1", "-extfile", str(ext), "-out", str(cert))
    return cert, key


@pytest.fixture(scope="session")
def pki(tmp_path_factory):
    """Certificates for mutual TLS: a trusted CA and an unrelated one."""
    if shutil.which("openssl") is None:
        pytest.skip("openssl is not available")
    directory = tmp_path_factory.mktemp("pki")
    ca = _make_ca(directory, "engine-ca")
    rogue_ca = _make_ca(directory, "rogue-ca")
    return {
        "ca": ca[0],
        "server": _make_leaf(directory, "server", ca, "serverAuth"),
        "client": _make_leaf(directory, "client", ca, "clientAuth"),
        "rogue_server": _make_leaf(directory, "rogue-server", rogue_ca, "serverAuth"),
    }


class TlsEngineServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """The fake engine over TCP, requiring a client certificate from ``client_ca``."""

    daemon_threads = True
    block_on_close = False
    allow_reuse_address = True

    def __init__(self, cert: Path, key: Path, client_ca: Path):
        super().__init__(("127.0.0.1", 0), FakeEngineHandler)
        self.context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH, cafile=str(client_ca))
        self.context.verify_mode = ssl.CERT_REQUIRED
        self.context.load_cert_chain(str(cert), str(key))
        self.requests = []

    def get_request(self):
        sock, address = self.socket.accept()
        return self.context.wrap_socket(sock, server_side=True), address


@pytest.fixture
def tls_engine(pki):
    """Start a TLS engine with a given server certificate; yields a starter."""
    servers = []

    def start(cert_and_key=None):
        cert, key = cert_and_key or pki["server"]
        server = TlsEngineServer(cert, key, pki["ca"])
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.shutdown()
        server.server_close()
