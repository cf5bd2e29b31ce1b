"""Tests for tunnel framing, endpoints and share codes."""

import random
import struct

import pytest

from directlink.protocol import (
    Endpoint,
    EndpointKind,
    Frame,
    MessageType,
    PUNCH_PROBE,
    create_ack_frame,
    create_control_frame,
    create_data_frame,
    generate_share_code,
    is_valid_share_code,
    normalize_share_code,
    share_uri,
    strip_share_prefix,
)


class TestFrames:

    def test_data_frame_layout(self):
        frame = create_data_frame(7, b"hello")
        assert frame[0] == MessageType.DATA
        assert struct.unpack(">I", frame[1:5])[0] == 7
        assert frame[5:] == b"hello"

    def test_ack_frame_layout(self):
        assert create_ack_frame(0x01020304) == b"\x02\x01\x02\x03\x04"

    def test_control_frames_are_one_byte(self):
        assert create_control_frame(MessageType.HELLO) == b"\x03"
        assert create_control_frame(MessageType.HELLO_ACK) == b"\x04"
        assert create_control_frame(MessageType.CLOSE) == b"\x05"

    def test_unpack_data(self):
        frame = Frame.unpack(create_data_frame(42, b"\x00\xff payload"))
        assert frame.message_type == MessageType.DATA
        assert frame.sequence == 42
        assert frame.payload == b"\x00\xff payload"

    def test_unpack_empty_data_payload(self):
        frame = Frame.unpack(create_data_frame(1, b""))
        assert frame.payload == b""

    def test_unpack_ack_has_no_payload(self):
        frame = Frame.unpack(create_ack_frame(9) + b"trailing")
        assert frame.message_type == MessageType.ACK
        assert frame.sequence == 9
        assert frame.payload == b""

    def test_sequence_is_unsigned(self):
        frame = Frame.unpack(create_data_frame(0xFFFFFFFF, b"x"))
        assert frame.sequence == 0xFFFFFFFF

    @pytest.mark.parametrize("data", [b"", PUNCH_PROBE, b"\x09", b"\x01\x00\x00", b"\x02\x00"])
    def test_unusable_datagrams_are_ignored(self, data):
        assert Frame.unpack(data) is None


class TestEndpoint:

    def test_from_dict(self):
        endpoint = Endpoint.from_dict({"ip": "192.168.1.10", "port": 51920, "type": "LAN"})
        assert endpoint == Endpoint("192.168.1.10", 51920, EndpointKind.LAN)
        assert endpoint.address == ("192.168.1.10", 51920)

    def test_type_defaults_to_wan(self):
        endpoint = Endpoint.from_dict({"ip": "203.0.113.7", "port": "4000"})
        assert endpoint.kind == EndpointKind.WAN
        assert endpoint.port == 4000

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            Endpoint.from_dict({"ip": "1.2.3.4", "port": 1, "type": "RELAY"})

    def test_str(self):
        assert str(Endpoint("1.2.3.4", 5, EndpointKind.LAN)) == "LAN:1.2.3.4:5"


class TestShareCodes:

    def test_generated_codes_are_valid(self):
        rng = random.Random(1234)
        for _ in range(200):
            code = generate_share_code(rng)
            assert is_valid_share_code(code), code

    def test_generated_number_range(self):
        rng = random.Random(99)
        numbers = {int(generate_share_code(rng).rsplit("-", 1)[1]) for _ in range(500)}
        assert min(numbers) >= 10
        assert max(numbers) <= 99

    @pytest.mark.parametrize("code", ["happy-llama-42", "a-b-123", "swift-owl-10"])
    def test_valid(self, code):
        assert is_valid_share_code(code)

    @pytest.mark.parametrize("code", [None, "", "happy-llama", "happy-llama-4", "happy-llama-4242",
                                      "Happy-llama-42", "happy_llama_42", "happy-llama-42 "])
    def test_invalid(self, code):
        assert not is_valid_share_code(code)

    @pytest.mark.parametrize("address", [
        "happy-llama-42",
        "p2p://happy-llama-42",
        "p2p.happy-llama-42",
        "  P2P://Happy-Llama-42  ",
    ])
    def test_normalize(self, address):
        assert normalize_share_code(address) == "happy-llama-42"

    @pytest.mark.parametrize("address", [None, "", "p2p://", "http://happy-llama-42", "p2p.not a code"])
    def test_normalize_rejects(self, address):
        assert normalize_share_code(address) is None

    def test_strip_prefix_keeps_invalid_code(self):
        assert strip_share_prefix("p2p://Whatever") == "whatever"

    def test_share_uri(self):
        assert share_uri("happy-llama-42") == "p2p://happy-llama-42"
