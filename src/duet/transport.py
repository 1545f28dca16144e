"""
Duet - Peer transport capability.

Created by duet contributors

A PeerTransport establishes a direct, ordered, reliable channel between two
peers from a pair of copy/paste descriptors and reports what happens to it
as typed events. The session core only ever talks to this interface; how
connectivity is achieved is the transport's business.

This module also provides LoopbackTransport, an in-memory implementation
used for tests and local demos.
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Dict, Optional

from .constants import DESCRIPTOR_ANSWER, DESCRIPTOR_OFFER, TOKEN_SIZE
from .errors import ErrorCode, ProtocolError, TransportFailure
from .protocol import Protocol

logger = logging.getLogger(__name__)


class EventKind(Enum):
    """Kinds of events a transport reports."""

    OPEN = auto()  # Channel is open for sending
    MESSAGE = auto()  # A frame arrived (data: bytes)
    CLOSED = auto()  # Channel closed (locally or by the peer)
    STATE = auto()  # Informational connection state change (data: str)
    ERROR = auto()  # Connectivity failure (data: str)


@dataclass(frozen=True)
class TransportEvent:
    """A single transport event."""

    kind: EventKind
    data: Any = None


EventHandler = Callable[[TransportEvent], None]


class PeerTransport(ABC):
    """
    Abstract peer-to-peer channel.

    Implementations must deliver frames in order and without loss once the
    channel is open, and must report events through the registered handler
    from the event loop thread.
    """

    def __init__(self):
        self._event_handler: Optional[EventHandler] = None

    def set_event_handler(self, handler: Optional[EventHandler]) -> None:
        """Register the single consumer of this transport's events."""
        self._event_handler = handler

    def _emit(self, kind: EventKind, data: Any = None) -> None:
        if self._event_handler is None:
            logger.debug(f"Dropping {kind.name} event: no handler registered")
            return
        try:
            self._event_handler(TransportEvent(kind, data))
        except Exception as e:
            logger.error(f"Transport event handler error: {e}")

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether frames can currently be sent."""

    @abstractmethod
    async def create_offer(self) -> str:
        """Prepare the offering side and return its descriptor."""

    @abstractmethod
    async def create_answer(self, offer: str) -> str:
        """
        Accept a peer's offer and return the answering descriptor.

        Raises:
            ProtocolError: If the offer is malformed
            TransportFailure: If the peer cannot be reached
        """

    @abstractmethod
    async def accept_answer(self, answer: str) -> None:
        """
        Finalize the offering side with the peer's answer.

        Raises:
            ProtocolError: If the answer is malformed or does not match the offer
            TransportFailure: If the connection cannot be completed
        """

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """
        Send one frame.

        Raises:
            TransportFailure: If the channel is not open
        """

    @abstractmethod
    async def close(self) -> None:
        """Release the channel. Safe to call more than once."""


class LoopbackHub:
    """Rendezvous point connecting LoopbackTransports within one process."""

    def __init__(self):
        self.offers: Dict[str, "LoopbackTransport"] = {}
        self.answers: Dict[str, "LoopbackTransport"] = {}

    def create_transport(self) -> "LoopbackTransport":
        return LoopbackTransport(self)


class LoopbackTransport(PeerTransport):
    """
    In-memory transport.

    Frames are handed to the peer with loop.call_soon, which keeps them in
    send order and delivers them asynchronously like a real network would.
    """

    def __init__(self, hub: LoopbackHub):
        super().__init__()
        self.hub = hub
        self.channel_id: Optional[str] = None
        self.answer_id: Optional[str] = None
        self.peer: Optional["LoopbackTransport"] = None
        self._open = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._open and not self._closed

    async def create_offer(self) -> str:
        self.channel_id = secrets.token_hex(TOKEN_SIZE)
        self.hub.offers[self.channel_id] = self
        self._emit(EventKind.STATE, "gathering-complete")
        return Protocol.encode_descriptor(DESCRIPTOR_OFFER, {"channel": self.channel_id})

    async def create_answer(self, offer: str) -> str:
        body = Protocol.decode_descriptor(offer, DESCRIPTOR_OFFER)
        channel_id = body.get("channel")
        if not isinstance(channel_id, str):
            raise ProtocolError(ErrorCode.E206_INVALID_MESSAGE, "Offer has no channel id")

        offerer = self.hub.offers.get(channel_id)
        if offerer is None or offerer.peer is not None or offerer._closed:
            raise TransportFailure(
                ErrorCode.E209_HANDSHAKE_FAILED,
                "No offering peer is waiting on this channel",
                {"channel": channel_id},
            )

        self.channel_id = channel_id
        self.answer_id = secrets.token_hex(TOKEN_SIZE)
        self.peer = offerer
        self.hub.answers[self.answer_id] = self
        self._emit(EventKind.STATE, "have-remote-offer")
        return Protocol.encode_descriptor(
            DESCRIPTOR_ANSWER, {"channel": channel_id, "answer": self.answer_id}
        )

    async def accept_answer(self, answer: str) -> None:
        body = Protocol.decode_descriptor(answer, DESCRIPTOR_ANSWER)
        if body.get("channel") != self.channel_id or self.channel_id is None:
            raise ProtocolError(
                ErrorCode.E209_HANDSHAKE_FAILED, "Answer does not belong to this offer"
            )

        answerer = self.hub.answers.get(body.get("answer"))
        if answerer is None or answerer.peer is not self or answerer._closed:
            raise TransportFailure(
                ErrorCode.E209_HANDSHAKE_FAILED, "Answering peer is gone"
            )

        self.peer = answerer
        self.hub.offers.pop(self.channel_id, None)
        self.hub.answers.pop(answerer.answer_id, None)

        loop = asyncio.get_running_loop()
        for side in (self, answerer):
            loop.call_soon(side._mark_open)

    def _mark_open(self) -> None:
        if self._closed:
            return
        self._open = True
        self._emit(EventKind.STATE, "connected")
        self._emit(EventKind.OPEN)

    def _deliver(self, data: bytes) -> None:
        if not self._closed:
            self._emit(EventKind.MESSAGE, data)

    def _peer_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._open = False
        self._emit(EventKind.CLOSED)

    async def send(self, data: bytes) -> None:
        if not self.is_open or self.peer is None:
            raise TransportFailure(ErrorCode.E204_SEND_FAILED, "Channel is not open")
        asyncio.get_running_loop().call_soon(self.peer._deliver, bytes(data))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._open = False
        if self.channel_id is not None and self.hub.offers.get(self.channel_id) is self:
            del self.hub.offers[self.channel_id]
        if self.answer_id is not None:
            self.hub.answers.pop(self.answer_id, None)
        if self.peer is not None and self.peer.peer is self:
            asyncio.get_running_loop().call_soon(self.peer._peer_closed)
        self._emit(EventKind.CLOSED)
