"""
Duet - In-band salt delivery.

Created by duet contributors

The offerer generates the session salt and sends it, unencrypted, as the
single control frame of the session as soon as the channel opens. The salt
is not secret; it only has to be unique per session. The answerer stores
the first control frame it receives and can then derive the session key.
"""

import logging
from enum import Enum
from typing import Optional

from .constants import SALT_SIZE
from .errors import ErrorCode, ProtocolError
from .protocol import ControlFrame, Protocol
from .transport import PeerTransport

logger = logging.getLogger(__name__)


class Role(Enum):
    """Which side of the handshake a session plays."""

    OFFERER = "offerer"
    ANSWERER = "answerer"


class SaltExchange:
    """
    One-shot salt delivery for one session.

    Attributes:
        role: OFFERER sends the salt, ANSWERER receives it
        sent: Whether the offerer has sent the control frame
    """

    def __init__(self, role: Role, salt: Optional[bytes] = None):
        if role == Role.OFFERER and (salt is None or len(salt) != SALT_SIZE):
            raise ProtocolError(
                ErrorCode.E002_INVALID_ARGUMENT,
                f"Offerer needs a {SALT_SIZE}-byte salt",
            )
        if role == Role.ANSWERER and salt is not None:
            raise ProtocolError(
                ErrorCode.E002_INVALID_ARGUMENT, "Answerer salt comes from the peer"
            )
        self.role = role
        self._salt = salt
        self.sent = False

    @property
    def salt(self) -> Optional[bytes]:
        return self._salt

    @property
    def has_salt(self) -> bool:
        return self._salt is not None

    async def send(self, transport: PeerTransport) -> bool:
        """
        Send the control frame once.

        Returns:
            True if the frame was sent by this call, False if it had been sent already

        Raises:
            TransportFailure: If the channel rejects the frame
        """
        if self.role != Role.OFFERER:
            raise ProtocolError(ErrorCode.E210_INVALID_STATE, "Only the offerer sends the salt")
        if self.sent:
            return False
        if self._salt is None:
            raise ProtocolError(ErrorCode.E210_INVALID_STATE, "Salt already discarded")

        frame = Protocol.encode_frame(ControlFrame(salt=self._salt))
        await transport.send(frame.encode("utf-8"))
        self.sent = True
        logger.debug("Salt control frame sent")
        return True

    def receive(self, frame: ControlFrame) -> bytes:
        """
        Store the peer's salt.

        Returns:
            The stored salt

        Raises:
            ProtocolError: If this side is the offerer, or a salt was already received
        """
        if self.role != Role.ANSWERER:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE, "Offerer received an unexpected control frame"
            )
        if self._salt is not None:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE, "Duplicate control frame; salt is immutable"
            )
        self._salt = frame.salt
        logger.debug("Salt control frame received")
        return self._salt

    def discard(self) -> None:
        self._salt = None
