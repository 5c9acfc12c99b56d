"""
Design (protocol.py)
- Purpose: Minecraft Server List Ping client. One TCP connection per probe:
           Handshake (next state = status) + Status Request out, one Status Response in.
- Inputs: address, port, timeout (seconds), protocol version.
- Outputs: StatusPayload on success; raises a ProtocolError subclass otherwise.
- Side effects: Opens and always closes exactly one socket per call. No retries. Name resolution
                runs on a short-lived daemon thread so it counts against the same deadline.
- Thread-safety: Stateless; safe to call from pool workers concurrently.

Wire framing (all integers in VarInt unless noted):
    packet   = length(VarInt of len(id + payload)) | id | payload
    handshake payload = protocol version | address (VarInt length + UTF-8) | port (u16 BE) | next state
    status request    = id 0x00, empty payload
    status response   = id 0x00, payload = VarInt length + UTF-8 JSON

The pre-Netty "legacy" ping (0xFE 0x01) is a separate path, probe_legacy(); it shares
nothing with the framing above.
"""

import json
import logging
import socket
import struct
import threading
import time
from typing import Any, Tuple

from .config import PROTOCOL_VERSION
from .errors import ConnectFailed, MalformedResponse, ProbeTimeout, ProtocolMismatch
from .models import StatusPayload
from .utils import flatten_description

_LOGGER = logging.getLogger(__name__)

PACKET_HANDSHAKE = 0x00
PACKET_STATUS_REQUEST = 0x00
PACKET_STATUS_RESPONSE = 0x00
NEXT_STATE_STATUS = 1

VARINT_MAX_BYTES = 5
# Status responses carry a base64 favicon; anything past this is not a status packet
MAX_PACKET_LENGTH = 1 << 21

LEGACY_PING = b"\xfe\x01"
LEGACY_KICK = 0xFF


# --- VarInt / string helpers ---

def encode_varint(value: int) -> bytes:
    """Encode a signed 32-bit int; negatives use their two's complement (always 5 bytes)."""
    if not -(1 << 31) <= value < (1 << 31):
        raise ValueError(f"VarInt out of range: {value}")
    value &= 0xFFFFFFFF
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """
    Purpose: Decode one VarInt from data[offset:].
    Outputs: (value, bytes consumed). Raises MalformedResponse if truncated or longer than 5 bytes.
    """
    result = 0
    for index in range(VARINT_MAX_BYTES):
        if offset + index >= len(data):
            raise MalformedResponse("truncated VarInt")
        byte = data[offset + index]
        result |= (byte & 0x7F) << (7 * index)
        if not byte & 0x80:
            if result & 0x80000000:
                result -= 1 << 32
            return result, index + 1
    raise MalformedResponse("VarInt longer than 5 bytes")


def encode_string(text: str) -> bytes:
    raw = text.encode("utf-8")
    return encode_varint(len(raw)) + raw


def decode_string(data: bytes, offset: int = 0) -> Tuple[str, int]:
    length, used = decode_varint(data, offset)
    start = offset + used
    if length < 0 or start + length > len(data):
        raise MalformedResponse(f"string length {length} exceeds packet payload")
    try:
        return data[start:start + length].decode("utf-8"), used + length
    except UnicodeDecodeError as exc:
        raise MalformedResponse(f"status payload is not UTF-8: {exc}") from exc


def frame_packet(packet_id: int, payload: bytes = b"") -> bytes:
    body = encode_varint(packet_id) + payload
    return encode_varint(len(body)) + body


def build_handshake(address: str, port: int, protocol_version: int = PROTOCOL_VERSION) -> bytes:
    payload = (
        encode_varint(protocol_version)
        + encode_string(address)
        + struct.pack(">H", port)
        + encode_varint(NEXT_STATE_STATUS)
    )
    return frame_packet(PACKET_HANDSHAKE, payload)


def build_status_request() -> bytes:
    return frame_packet(PACKET_STATUS_REQUEST)


def _check_port(port: int) -> None:
    if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 0xFFFF:
        raise ValueError(f"port must be a 16-bit unsigned integer, got {port!r}")


def _non_negative_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedResponse(f"{name} must be a non-negative integer, got {value!r}")
    return value


def parse_status_json(text: str, latency_ms: "int | None" = None) -> StatusPayload:
    """
    Purpose: Validate the Status Response JSON.
    Required: players.online, players.max. Optional: version.name, version.protocol, description.
    Everything else (favicon, players.sample, mod info) is ignored.
    """
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedResponse(f"status JSON invalid: {exc}") from exc
    if not isinstance(document, dict):
        raise MalformedResponse("status JSON is not an object")
    players = document.get("players")
    if not isinstance(players, dict):
        raise MalformedResponse("status JSON has no players block")
    online = _non_negative_int(players.get("online"), "players.online")
    maximum = _non_negative_int(players.get("max"), "players.max")

    version = document.get("version")
    version_name, version_protocol = "", None
    if isinstance(version, dict):
        version_name = str(version.get("name") or "")
        proto = version.get("protocol")
        if isinstance(proto, int) and not isinstance(proto, bool):
            version_protocol = proto

    return StatusPayload(
        players_online=online,
        players_max=maximum,
        version_name=version_name,
        version_protocol=version_protocol,
        description=flatten_description(document.get("description")),
        latency_ms=latency_ms,
    )


# --- Socket plumbing ---

class _Connection:
    """A connected socket whose every send/recv is bounded by one shared deadline."""

    def __init__(self, sock: socket.socket, deadline: float):
        self.sock = sock
        self.deadline = deadline

    def _arm(self) -> None:
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise ProbeTimeout("probe budget exhausted")
        self.sock.settimeout(remaining)

    def send(self, data: bytes) -> None:
        self._arm()
        try:
            self.sock.sendall(data)
        except socket.timeout as exc:
            raise ProbeTimeout("timed out sending request") from exc
        except OSError as exc:
            raise ConnectFailed(f"connection lost while sending: {exc}") from exc

    def recv_exact(self, size: int) -> bytes:
        buf = bytearray()
        while len(buf) < size:
            self._arm()
            try:
                chunk = self.sock.recv(min(size - len(buf), 65536))
            except socket.timeout as exc:
                raise ProbeTimeout(f"timed out after {len(buf)}/{size} bytes") from exc
            except OSError as exc:
                raise ConnectFailed(f"connection lost while reading: {exc}") from exc
            if not chunk:
                raise MalformedResponse(f"connection closed after {len(buf)}/{size} bytes")
            buf += chunk
        return bytes(buf)

    def read_varint(self) -> int:
        raw = bytearray()
        while True:
            raw += self.recv_exact(1)
            if not raw[-1] & 0x80:
                return decode_varint(bytes(raw))[0]
            if len(raw) >= VARINT_MAX_BYTES:
                raise MalformedResponse("VarInt longer than 5 bytes")

    def read_packet(self) -> Tuple[int, bytes]:
        length = self.read_varint()
        if length <= 0 or length > MAX_PACKET_LENGTH:
            raise MalformedResponse(f"invalid packet length {length}")
        body = self.recv_exact(length)
        packet_id, used = decode_varint(body)
        return packet_id, body[used:]


def _resolve(address: str, port: int, deadline: float) -> list:
    """getaddrinfo bounded by the probe deadline; the lookup runs on a daemon thread."""
    outcome = {}
    done = threading.Event()

    def _lookup() -> None:
        try:
            outcome["infos"] = socket.getaddrinfo(address, port, 0, socket.SOCK_STREAM)
        except (OSError, UnicodeError) as exc:
            outcome["error"] = exc
        finally:
            done.set()

    threading.Thread(target=_lookup, name=f"slp-resolve-{address}", daemon=True).start()
    if not done.wait(max(0.0, deadline - time.monotonic())):
        raise ProbeTimeout(f"resolving {address} timed out")
    error = outcome.get("error")
    if error is not None:
        raise ConnectFailed(f"cannot resolve {address}: {error}", kind="dns_error") from error
    if not outcome.get("infos"):
        raise ConnectFailed(f"cannot resolve {address}: no addresses", kind="dns_error")
    return outcome["infos"]


def _open(address: str, port: int, deadline: float) -> socket.socket:
    """Try each resolved address in turn; every attempt only gets what is left of the deadline."""
    last_error = None
    for family, sock_type, proto, _, sockaddr in _resolve(address, port, deadline):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        sock = socket.socket(family, sock_type, proto)
        try:
            sock.settimeout(remaining)
            sock.connect(sockaddr)
            return sock
        except OSError as exc:
            sock.close()
            last_error = exc
    if last_error is None or isinstance(last_error, socket.timeout):
        raise ProbeTimeout(f"connect to {address}:{port} timed out")
    raise ConnectFailed(f"connect to {address}:{port} failed: {last_error}") from last_error


# --- Probes ---

def probe_once(address: str, port: int, timeout: float,
               protocol_version: int = PROTOCOL_VERSION) -> StatusPayload:
    """
    Purpose: One Server List Ping exchange.
    Inputs: address, port (0..65535), timeout bounding connect + handshake + read.
    Outputs: StatusPayload with latency_ms measured from connect to full response.
    Raises: ConnectFailed, ProbeTimeout, MalformedResponse, ProtocolMismatch (ValueError for a bad port).
    """
    _check_port(port)
    deadline = time.monotonic() + timeout
    sock = _open(address, port, deadline)
    try:
        conn = _Connection(sock, deadline)
        started = time.monotonic()
        conn.send(build_handshake(address, port, protocol_version) + build_status_request())
        packet_id, payload = conn.read_packet()
        latency_ms = int(round((time.monotonic() - started) * 1000))
    finally:
        sock.close()

    if packet_id != PACKET_STATUS_RESPONSE:
        raise ProtocolMismatch(f"expected status response id 0x00, got {packet_id:#04x}")
    text, _ = decode_string(payload)
    status = parse_status_json(text, latency_ms)
    _LOGGER.debug("SLP %s:%d ok: %d/%d players in %dms",
                  address, port, status.players_online, status.players_max, latency_ms)
    return status


def parse_legacy_response(data: bytes, latency_ms: "int | None" = None) -> StatusPayload:
    """
    Purpose: Parse the 0xFF kick packet a pre-Netty server answers 0xFE 0x01 with.
    Formats: '§1\\0protocol\\0version\\0motd\\0online\\0max' (1.4-1.6)
             or 'motd§online§max' (beta 1.8-1.3).
    """
    if not data or data[0] != LEGACY_KICK:
        raise ProtocolMismatch(f"expected legacy kick packet 0xff, got {data[:1].hex() or 'nothing'}")
    if len(data) < 3:
        raise MalformedResponse("legacy response too short")
    (chars,) = struct.unpack(">H", data[1:3])
    body = data[3:3 + chars * 2]
    if len(body) != chars * 2:
        raise MalformedResponse("legacy response truncated")
    text = body.decode("utf-16-be", errors="replace")
    try:
        if text.startswith("§1\x00"):
            fields = text.split("\x00")
            if len(fields) < 6:
                raise MalformedResponse("legacy response has too few fields")
            protocol, version, motd, online, maximum = fields[1:6]
            return StatusPayload(
                players_online=int(online),
                players_max=int(maximum),
                version_name=f"legacy:{version}",
                version_protocol=int(protocol),
                description=flatten_description(motd),
                latency_ms=latency_ms,
            )
        motd, online, maximum = text.rsplit("§", 2)
        return StatusPayload(
            players_online=int(online),
            players_max=int(maximum),
            version_name="legacy",
            description=flatten_description(motd),
            latency_ms=latency_ms,
        )
    except ValueError as exc:
        raise MalformedResponse(f"legacy response fields invalid: {exc}") from exc


def probe_legacy(address: str, port: int, timeout: float) -> StatusPayload:
    """Legacy (0xFE 0x01) server list ping. Same failure taxonomy as probe_once()."""
    _check_port(port)
    deadline = time.monotonic() + timeout
    sock = _open(address, port, deadline)
    try:
        conn = _Connection(sock, deadline)
        started = time.monotonic()
        conn.send(LEGACY_PING)
        header = conn.recv_exact(3)
        if header[0] != LEGACY_KICK:
            raise ProtocolMismatch(f"expected legacy kick packet 0xff, got {header[0]:#04x}")
        (chars,) = struct.unpack(">H", header[1:3])
        data = header + conn.recv_exact(chars * 2)
        latency_ms = int(round((time.monotonic() - started) * 1000))
    finally:
        sock.close()
    return parse_legacy_response(data, latency_ms)
