import socket
import struct
import time

import pytest

from mcmonitor import protocol
from mcmonitor.errors import ConnectFailed, MalformedResponse, ProbeTimeout, ProtocolMismatch


def test_varint_reference_encodings():
    assert protocol.encode_varint(0) == b"\x00"
    assert protocol.encode_varint(127) == b"\x7f"
    assert protocol.encode_varint(128) == b"\x80\x01"
    assert protocol.encode_varint(25565) == b"\xdd\xc7\x01"
    assert protocol.encode_varint(2097151) == b"\xff\xff\x7f"
    assert protocol.encode_varint(2147483647) == b"\xff\xff\xff\xff\x07"
    assert protocol.encode_varint(-1) == b"\xff\xff\xff\xff\x0f"


def test_decode_varint_reports_bytes_consumed_and_sign():
    assert protocol.decode_varint(b"\xdd\xc7\x01rest") == (25565, 3)
    assert protocol.decode_varint(b"\x00\x80\x01", offset=1) == (128, 2)
    assert protocol.decode_varint(b"\xff\xff\xff\xff\x0f") == (-1, 5)


def test_decode_varint_rejects_truncated_and_overlong_input():
    with pytest.raises(MalformedResponse):
        protocol.decode_varint(b"\x80\x80")
    with pytest.raises(MalformedResponse):
        protocol.decode_varint(b"\x80\x80\x80\x80\x80\x01")


def test_encode_varint_rejects_values_outside_int32():
    with pytest.raises(ValueError):
        protocol.encode_varint(1 << 31)


def test_handshake_matches_reference_bytes():
    expected = b"\x0f" + b"\x00" + b"\x2f" + b"\x09localhost" + b"\x63\xdd" + b"\x01"
    assert protocol.build_handshake("localhost", 25565, protocol_version=47) == expected


def test_handshake_with_default_protocol_version_is_five_byte_varint():
    packet = protocol.build_handshake("localhost", 25565)
    assert packet[0] == 19  # 1 id + 5 version + 10 address + 2 port + 1 state
    assert packet[1:7] == b"\x00\xff\xff\xff\xff\x0f"
    assert packet[-3:-1] == struct.pack(">H", 25565)
    assert packet[-1] == protocol.NEXT_STATE_STATUS


def test_status_request_is_empty_packet_zero():
    assert protocol.build_status_request() == b"\x01\x00"


def test_decode_string_counts_utf8_bytes_not_characters():
    raw = "§aHi".encode("utf-8")
    data = protocol.encode_varint(len(raw)) + raw
    assert protocol.decode_string(data) == ("§aHi", 1 + len(raw))


def test_decode_string_rejects_length_past_payload():
    with pytest.raises(MalformedResponse):
        protocol.decode_string(b"\x10abc")


def test_parse_status_json_keeps_required_fields_and_ignores_the_rest():
    text = (
        '{"version": {"name": "Paper 1.20.4", "protocol": 765},'
        ' "players": {"online": 3, "max": 50, "sample": [{"name": "alex", "id": "x"}]},'
        ' "description": {"text": "", "extra": [{"text": "Hello "}, {"text": "§aWorld"}]},'
        ' "favicon": "data:image/png;base64,AAAA", "enforcesSecureChat": true}'
    )
    status = protocol.parse_status_json(text, latency_ms=15)
    assert status.players_online == 3
    assert status.players_max == 50
    assert status.version_name == "Paper 1.20.4"
    assert status.version_protocol == 765
    assert status.description == "Hello World"
    assert status.latency_ms == 15


@pytest.mark.parametrize("text", [
    "not json",
    "[]",
    '{"version": {"name": "x"}}',
    '{"players": {"online": -1, "max": 10}}',
    '{"players": {"online": "3", "max": 10}}',
    '{"players": {"online": true, "max": 10}}',
])
def test_parse_status_json_rejects_invalid_documents(text):
    with pytest.raises(MalformedResponse):
        protocol.parse_status_json(text)


def test_probe_once_against_double_returns_player_counts(slp_double):
    double = slp_double(players_online=7, players_max=20)

    status = protocol.probe_once("127.0.0.1", double.port, timeout=2.0)

    assert status.players_online == 7
    assert status.players_max == 20
    assert status.version_name == "1.20.4"
    assert status.description == "A Minecraft Server"
    assert status.latency_ms is not None and status.latency_ms >= 0
    handshake, request = double.requests[0]
    assert handshake == protocol.build_handshake("127.0.0.1", double.port)[1:]
    assert request == b"\x00"
    assert double.closed_by_peer.wait(2.0)


def test_probe_once_times_out_and_closes_the_socket(slp_double):
    double = slp_double(delay=3.0)
    timeout = 0.3

    started = time.monotonic()
    with pytest.raises(ProbeTimeout):
        protocol.probe_once("127.0.0.1", double.port, timeout=timeout)
    elapsed = time.monotonic() - started

    assert elapsed < timeout + 0.5
    assert double.closed_by_peer.wait(1.0)


def test_probe_once_times_out_when_nothing_is_ever_sent(blackhole):
    with pytest.raises(ProbeTimeout):
        protocol.probe_once("127.0.0.1", blackhole, timeout=0.3)


def test_probe_once_classifies_refused_connection(closed_port):
    with pytest.raises(ConnectFailed) as info:
        protocol.probe_once("127.0.0.1", closed_port, timeout=1.0)
    assert info.value.kind == "connection_refused"


def test_probe_once_classifies_resolution_failure(monkeypatch):
    def _fail(*args, **kwargs):
        raise socket.gaierror(-2, "Name or service not known")

    monkeypatch.setattr(protocol.socket, "getaddrinfo", _fail)
    with pytest.raises(ConnectFailed) as info:
        protocol.probe_once("no-such-host.invalid", 25565, timeout=1.0)
    assert info.value.kind == "dns_error"


def test_slow_name_resolution_counts_against_the_timeout(monkeypatch):
    def _stalled_resolver(*args, **kwargs):
        time.sleep(2.0)
        raise socket.gaierror(-3, "Temporary failure in name resolution")

    monkeypatch.setattr(protocol.socket, "getaddrinfo", _stalled_resolver)
    timeout = 0.3

    started = time.monotonic()
    with pytest.raises(ProbeTimeout):
        protocol.probe_once("mc.example.com", 25565, timeout=timeout)

    assert time.monotonic() - started < timeout + 0.3


class _SilentSocket:
    """Connect attempts hang for the whole timeout they are given."""

    attempts = []

    def __init__(self, *args):
        self.timeout = None

    def settimeout(self, value):
        self.timeout = value

    def connect(self, sockaddr):
        self.attempts.append((sockaddr, self.timeout))
        time.sleep(self.timeout)
        raise socket.timeout("timed out")

    def close(self):
        pass


def test_connect_attempts_share_one_deadline_across_addresses(monkeypatch):
    addresses = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", (f"192.0.2.{n}", 25565)) for n in (1, 2, 3)]
    monkeypatch.setattr(protocol.socket, "getaddrinfo", lambda *args, **kwargs: addresses)
    monkeypatch.setattr(protocol.socket, "socket", _SilentSocket)
    monkeypatch.setattr(_SilentSocket, "attempts", [])
    timeout = 0.5

    started = time.monotonic()
    with pytest.raises(ProbeTimeout):
        protocol.probe_once("mc.example.com", 25565, timeout=timeout)
    elapsed = time.monotonic() - started

    assert elapsed < timeout + 0.3
    assert all(budget <= timeout for _, budget in _SilentSocket.attempts)


def test_connect_falls_through_to_the_next_address(monkeypatch, slp_double, closed_port):
    double = slp_double(players_online=4)
    addresses = [
        (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("127.0.0.1", closed_port)),
        (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("127.0.0.1", double.port)),
    ]
    monkeypatch.setattr(protocol.socket, "getaddrinfo", lambda *args, **kwargs: addresses)

    status = protocol.probe_once("mc.example.com", 25565, timeout=2.0)

    assert status.players_online == 4


def test_probe_once_rejects_unexpected_packet_id(slp_double):
    double = slp_double(mode="bad_id")
    with pytest.raises(ProtocolMismatch):
        protocol.probe_once("127.0.0.1", double.port, timeout=2.0)


def test_probe_once_rejects_invalid_json(slp_double):
    double = slp_double(mode="bad_json")
    with pytest.raises(MalformedResponse):
        protocol.probe_once("127.0.0.1", double.port, timeout=2.0)


def test_probe_once_reports_hang_up_mid_exchange_as_malformed(slp_double):
    double = slp_double(mode="close")
    with pytest.raises(MalformedResponse):
        protocol.probe_once("127.0.0.1", double.port, timeout=2.0)


@pytest.mark.parametrize("port", [-1, 65536, "25565", True])
def test_probe_once_rejects_invalid_ports_before_any_io(port):
    with pytest.raises(ValueError):
        protocol.probe_once("127.0.0.1", port, timeout=1.0)


def test_parse_legacy_response_1_6_format():
    text = "§1\x00127\x001.6.4\x00§cOld §rServer\x003\x0010"
    data = b"\xff" + struct.pack(">H", len(text)) + text.encode("utf-16-be")

    status = protocol.parse_legacy_response(data)

    assert (status.players_online, status.players_max) == (3, 10)
    assert status.version_name == "legacy:1.6.4"
    assert status.version_protocol == 127
    assert status.description == "Old Server"


def test_parse_legacy_response_beta_format():
    text = "A beta server§2§8"
    data = b"\xff" + struct.pack(">H", len(text)) + text.encode("utf-16-be")
    status = protocol.parse_legacy_response(data)
    assert (status.players_online, status.players_max) == (2, 8)
    assert status.version_name == "legacy"


def test_parse_legacy_response_requires_kick_packet():
    with pytest.raises(ProtocolMismatch):
        protocol.parse_legacy_response(b"\x00\x01\x02")


def test_probe_legacy_against_double(slp_double):
    double = slp_double(mode="legacy", players_online=4, players_max=12)
    status = protocol.probe_legacy("127.0.0.1", double.port, timeout=2.0)
    assert (status.players_online, status.players_max) == (4, 12)
    assert double.requests == [b"\xfe\x01"]
