import json
import socket
import struct
import threading
import time
from datetime import datetime, timezone

import pytest

from mcmonitor.models import ProbeResult, StatusPayload, TrackedServer
from mcmonitor.pingstore import PingStore
from mcmonitor.registry import ServerRegistry

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def varint(value):
    value &= 0xFFFFFFFF
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        out.append(byte | (0x80 if value else 0))
        if not value:
            return bytes(out)


class SlpDouble:
    """
    Threaded TCP server that answers one Server List Ping per connection.

    mode: "status" (normal), "bad_id" (response packet id 0x01), "bad_json",
          "close" (hang up after the request), "legacy" (only answers 0xFE 0x01).
    delay: seconds to wait before answering; a client hanging up meanwhile sets closed_by_peer.
    """

    def __init__(self, players_online=7, players_max=20, mode="status", delay=0.0,
                 description="A Minecraft Server"):
        self.players_online = players_online
        self.players_max = players_max
        self.mode = mode
        self.delay = delay
        self.description = description
        self.requests = []
        self.closed_by_peer = threading.Event()
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(16)
        self._sock.settimeout(0.1)
        self.port = self._sock.getsockname()[1]
        self._running = True
        self._thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._thread.start()

    def close(self):
        self._running = False
        self._thread.join(2)
        self._sock.close()

    def _accept_loop(self):
        while self._running:
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            threading.Thread(target=self._serve, args=(conn,), daemon=True).start()

    @staticmethod
    def _recv_exact(conn, size):
        buf = b""
        while len(buf) < size:
            chunk = conn.recv(size - len(buf))
            if not chunk:
                raise ConnectionError("client closed")
            buf += chunk
        return buf

    def _read_varint(self, conn, first=None):
        value, shift = 0, 0
        while True:
            byte = first if first is not None else self._recv_exact(conn, 1)[0]
            first = None
            value |= (byte & 0x7F) << shift
            shift += 7
            if not byte & 0x80:
                return value

    def _read_packet(self, conn, first=None):
        length = self._read_varint(conn, first)
        return self._recv_exact(conn, length)

    def _wait_or_detect_close(self, conn):
        if not self.delay:
            return False
        conn.settimeout(self.delay)
        try:
            if conn.recv(1) == b"":
                self.closed_by_peer.set()
                return True
        except socket.timeout:
            pass
        return False

    def status_json(self):
        return json.dumps({
            "version": {"name": "1.20.4", "protocol": 765},
            "players": {"online": self.players_online, "max": self.players_max, "sample": []},
            "description": {"text": self.description},
            "favicon": "data:image/png;base64,AAAA",
        })

    def _serve(self, conn):
        try:
            conn.settimeout(5)
            first = self._recv_exact(conn, 1)[0]
            if first == 0xFE:
                self.requests.append(b"\xfe" + self._recv_exact(conn, 1))
                if self.mode == "legacy":
                    text = "\xa71\x00127\x001.4.7\x00Old Server\x00{}\x00{}".format(
                        self.players_online, self.players_max)
                    encoded = text.encode("utf-16-be")
                    conn.sendall(b"\xff" + struct.pack(">H", len(text)) + encoded)
                return
            if self.mode == "legacy":
                # pre-Netty servers hang up on the modern handshake after a kick byte
                conn.sendall(b"\xff\x00\x00")
                return
            handshake = self._read_packet(conn, first)
            request = self._read_packet(conn)
            self.requests.append((handshake, request))
            if self._wait_or_detect_close(conn):
                return
            if self.mode == "close":
                return
            payload = self.status_json().encode("utf-8")
            if self.mode == "bad_json":
                payload = b"{not json"
            packet_id = b"\x01" if self.mode == "bad_id" else b"\x00"
            body = packet_id + varint(len(payload)) + payload
            conn.sendall(varint(len(body)) + body)
            # hold the socket until the client closes it
            conn.settimeout(2)
            if conn.recv(1) == b"":
                self.closed_by_peer.set()
        except (ConnectionError, socket.timeout, OSError):
            pass
        finally:
            conn.close()


@pytest.fixture
def slp_double():
    doubles = []

    def _make(**kwargs):
        double = SlpDouble(**kwargs)
        doubles.append(double)
        return double

    yield _make
    for double in doubles:
        double.close()


@pytest.fixture
def blackhole():
    """Listening socket that never accepts: connects succeed, nothing is ever answered."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(64)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def closed_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def store():
    ping_store = PingStore(":memory:")
    yield ping_store
    ping_store.close()


@pytest.fixture
def registry(store):
    return ServerRegistry(None, store=store)


def make_result(server_id=1, at=T0, online=True, players=7, kind=None):
    if online:
        return ProbeResult(server_id=server_id, observed_at=at, online=True,
                           player_count=players, player_max=20, latency_ms=12)
    return ProbeResult.offline(server_id, at, kind)


class FakeProbe:
    """
    Scripted stand-in for protocol.probe_once.
    script: {address -> StatusPayload | Exception | callable}; unknown addresses get 7/20 players.
    """

    def __init__(self, script=None, delay=0.0):
        self.script = script or {}
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def __call__(self, address, port, timeout, protocol_version=-1):
        with self._lock:
            self.calls.append((address, port))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            outcome = self.script.get(address, StatusPayload(players_online=7, players_max=20))
            if callable(outcome) and not isinstance(outcome, StatusPayload):
                outcome = outcome()
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            with self._lock:
                self.active -= 1


def server(server_id, address="mc.example.com", port=25565, name=None):
    return TrackedServer(id=server_id, name=name or f"server-{server_id}", address=address, port=port)
