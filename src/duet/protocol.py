"""
Duet - Wire protocol definitions.

Created by duet contributors

This module defines what travels over an opened channel and what users
copy between machines:

Frames (JSON objects, byte strings as lists of ints 0..255):
- Control frame: {"salt": [16 bytes]}  (plaintext, sent once by the offerer)
- Data frame:    {"iv": [12 bytes], "data": [ciphertext + tag]}

The presence of a "salt" field distinguishes control from data frames.

Descriptors are base64-encoded JSON objects with a "type" of "offer" or
"answer"; their remaining content belongs to the transport.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Union

from .constants import (
    DESCRIPTOR_ANSWER,
    DESCRIPTOR_OFFER,
    MAX_FRAME_SIZE,
    NONCE_SIZE,
    PROTOCOL_VERSION,
    SALT_SIZE,
)
from .errors import ErrorCode, ProtocolError


@dataclass(frozen=True)
class ControlFrame:
    """Session-setup frame carrying the offerer's salt."""

    salt: bytes


@dataclass(frozen=True)
class DataFrame:
    """Encrypted message frame."""

    iv: bytes
    data: bytes


Frame = Union[ControlFrame, DataFrame]


def _bytes_from_list(value: Any, field: str) -> bytes:
    if not isinstance(value, list):
        raise ProtocolError(
            ErrorCode.E206_INVALID_MESSAGE,
            f"Frame field '{field}' must be a list of byte values",
            {"field": field},
        )
    if not all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in value):
        raise ProtocolError(
            ErrorCode.E206_INVALID_MESSAGE,
            f"Frame field '{field}' contains values outside 0..255",
            {"field": field},
        )
    return bytes(value)


class Protocol:
    """Frame and descriptor codec."""

    VERSION = PROTOCOL_VERSION
    MAX_FRAME_SIZE = MAX_FRAME_SIZE

    @staticmethod
    def encode_frame(frame: Frame) -> str:
        """
        Serialize a frame to its JSON text form.

        Raises:
            ProtocolError: If the encoded frame exceeds MAX_FRAME_SIZE
        """
        if isinstance(frame, ControlFrame):
            payload: Dict[str, List[int]] = {"salt": list(frame.salt)}
        elif isinstance(frame, DataFrame):
            payload = {"iv": list(frame.iv), "data": list(frame.data)}
        else:
            raise ProtocolError(
                ErrorCode.E002_INVALID_ARGUMENT, f"Not a frame: {type(frame).__name__}"
            )

        text = json.dumps(payload, separators=(",", ":"))
        if len(text) > Protocol.MAX_FRAME_SIZE:
            raise ProtocolError(
                ErrorCode.E207_MESSAGE_TOO_LARGE,
                f"Frame too large: {len(text)} bytes",
                {"size": len(text), "max_size": Protocol.MAX_FRAME_SIZE},
            )
        return text

    @staticmethod
    def decode_frame(raw: Union[str, bytes]) -> Frame:
        """
        Parse a frame received from the channel.

        Raises:
            ProtocolError: If the payload is oversized, not JSON, not an
                object, or lacks a valid salt or iv/data pair
        """
        if len(raw) > Protocol.MAX_FRAME_SIZE:
            raise ProtocolError(
                ErrorCode.E207_MESSAGE_TOO_LARGE,
                f"Frame too large: {len(raw)} bytes",
                {"size": len(raw), "max_size": Protocol.MAX_FRAME_SIZE},
            )
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as e:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE, f"Failed to parse frame: {e}", {"error": str(e)}
            ) from e

        if not isinstance(payload, dict):
            raise ProtocolError(ErrorCode.E206_INVALID_MESSAGE, "Frame is not a JSON object")

        if "salt" in payload:
            salt = _bytes_from_list(payload["salt"], "salt")
            if len(salt) != SALT_SIZE:
                raise ProtocolError(
                    ErrorCode.E206_INVALID_MESSAGE,
                    f"Salt must be {SALT_SIZE} bytes, got {len(salt)}",
                    {"salt_length": len(salt)},
                )
            return ControlFrame(salt=salt)

        if "iv" not in payload or "data" not in payload:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                "Frame has neither a salt nor an iv/data pair",
                {"fields": sorted(payload)},
            )
        iv = _bytes_from_list(payload["iv"], "iv")
        if len(iv) != NONCE_SIZE:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"IV must be {NONCE_SIZE} bytes, got {len(iv)}",
                {"iv_length": len(iv)},
            )
        return DataFrame(iv=iv, data=_bytes_from_list(payload["data"], "data"))

    @staticmethod
    def encode_descriptor(descriptor_type: str, body: Dict[str, Any]) -> str:
        """Wrap transport parameters into a copy/paste-safe base64 string."""
        if descriptor_type not in (DESCRIPTOR_OFFER, DESCRIPTOR_ANSWER):
            raise ProtocolError(
                ErrorCode.E002_INVALID_ARGUMENT, f"Unknown descriptor type: {descriptor_type}"
            )
        payload = dict(body)
        payload["type"] = descriptor_type
        payload["version"] = Protocol.VERSION
        text = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        return base64.b64encode(text.encode("utf-8")).decode("ascii")

    @staticmethod
    def decode_descriptor(descriptor: str, expected_type: str) -> Dict[str, Any]:
        """
        Unwrap a pasted descriptor.

        Returns:
            The descriptor body, including its "type" and "version"

        Raises:
            ProtocolError: If the text is not base64 JSON, is not an object,
                or is not of the expected type or version
        """
        if not isinstance(descriptor, str) or not descriptor.strip():
            raise ProtocolError(ErrorCode.E206_INVALID_MESSAGE, "Descriptor is empty")
        try:
            raw = base64.b64decode("".join(descriptor.split()), validate=True)
            payload = json.loads(raw.decode("utf-8"))
        except (binascii.Error, ValueError, RecursionError) as e:
            # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE, f"Descriptor is not decodable: {e}"
            ) from e

        if not isinstance(payload, dict):
            raise ProtocolError(ErrorCode.E206_INVALID_MESSAGE, "Descriptor is not a JSON object")
        if payload.get("type") != expected_type:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"Expected an {expected_type} descriptor, got {payload.get('type')!r}",
                {"expected": expected_type, "received": payload.get("type")},
            )
        if payload.get("version") != Protocol.VERSION:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"Unsupported descriptor version: {payload.get('version')!r}",
                {"version": payload.get("version"), "expected": Protocol.VERSION},
            )
        return payload
