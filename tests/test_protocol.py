"""
Duet - Wire protocol tests.

Tests for frame and descriptor encoding and for rejection of malformed input.
"""

import base64
import json

import pytest

from duet.constants import DESCRIPTOR_ANSWER, DESCRIPTOR_OFFER
from duet.errors import ErrorCode, ProtocolError
from duet.protocol import ControlFrame, DataFrame, Protocol


def test_control_frame_wire_format():
    """Salt travels as a JSON list of byte values."""
    salt = bytes(range(16))
    text = Protocol.encode_frame(ControlFrame(salt=salt))

    assert json.loads(text) == {"salt": list(range(16))}
    assert Protocol.decode_frame(text) == ControlFrame(salt=salt)


def test_data_frame_wire_format():
    frame = DataFrame(iv=bytes(12), data=b"\xff\x00ciphertext")
    payload = json.loads(Protocol.encode_frame(frame))

    assert set(payload) == {"iv", "data"}
    assert payload["data"][0] == 255
    assert Protocol.decode_frame(json.dumps(payload).encode()) == frame


def test_salt_field_marks_control_frame():
    """A frame with a salt is a control frame even if it also has iv/data."""
    raw = json.dumps({"salt": [1] * 16, "iv": [0] * 12, "data": [1, 2]})
    assert isinstance(Protocol.decode_frame(raw), ControlFrame)


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        b"\xff\xfe",
        "[1, 2, 3]",
        "{}",
        '{"iv": [0,0,0,0,0,0,0,0,0,0,0,0]}',
        '{"salt": [1, 2, 3]}',
        '{"salt": "AAAAAAAAAAAAAAAAAAAAAA=="}',
        '{"iv": [0,0,0,0,0,0,0,0,0,0,0,0], "data": [256]}',
        '{"iv": [0,0,0,0,0,0,0,0,0,0,0,0], "data": [-1]}',
        '{"iv": [0,0,0,0,0,0,0,0,0,0,0,0], "data": [true]}',
        '{"iv": [0,0,0], "data": [1]}',
        pytest.param("[" * 100000, id="deeply-nested"),
    ],
)
def test_malformed_frames_rejected(raw):
    with pytest.raises(ProtocolError):
        Protocol.decode_frame(raw)


def test_oversized_frame_rejected():
    with pytest.raises(ProtocolError) as exc_info:
        Protocol.decode_frame("x" * (Protocol.MAX_FRAME_SIZE + 1))
    assert exc_info.value.code == ErrorCode.E207_MESSAGE_TOO_LARGE

    with pytest.raises(ProtocolError):
        Protocol.encode_frame(DataFrame(iv=bytes(12), data=bytes(Protocol.MAX_FRAME_SIZE)))


def test_descriptor_roundtrip():
    descriptor = Protocol.encode_descriptor(DESCRIPTOR_OFFER, {"channel": "abc"})

    body = Protocol.decode_descriptor(descriptor, DESCRIPTOR_OFFER)

    assert body["channel"] == "abc"
    assert body["type"] == DESCRIPTOR_OFFER
    assert body["version"] == Protocol.VERSION


def test_descriptor_tolerates_pasted_whitespace():
    descriptor = Protocol.encode_descriptor(DESCRIPTOR_ANSWER, {"x": 1})
    pasted = "  " + descriptor[:10] + "\n" + descriptor[10:] + "\n"

    assert Protocol.decode_descriptor(pasted, DESCRIPTOR_ANSWER)["x"] == 1


def test_descriptor_type_is_checked():
    offer = Protocol.encode_descriptor(DESCRIPTOR_OFFER, {})
    with pytest.raises(ProtocolError):
        Protocol.decode_descriptor(offer, DESCRIPTOR_ANSWER)


@pytest.mark.parametrize(
    "descriptor",
    [
        "",
        "   ",
        "%%% not base64 %%%",
        base64.b64encode(b"not json").decode(),
        base64.b64encode(b"[1, 2]").decode(),
        base64.b64encode(json.dumps({"type": "offer", "version": 99}).encode()).decode(),
        pytest.param(base64.b64encode(b"[" * 100000).decode(), id="deeply-nested"),
    ],
)
def test_malformed_descriptors_rejected(descriptor):
    with pytest.raises(ProtocolError):
        Protocol.decode_descriptor(descriptor, DESCRIPTOR_OFFER)


def test_unknown_descriptor_type_cannot_be_encoded():
    with pytest.raises(ProtocolError):
        Protocol.encode_descriptor("renegotiate", {})
