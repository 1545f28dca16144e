"""
Duet - Direct TCP transport.

Created by duet contributors

A PeerTransport over a plain asyncio TCP stream, for peers that can reach
each other directly (same LAN, VPN, or a forwarded port).

Handshake:
1. Offerer listens and publishes host, port and a random offer token.
2. Answerer connects, sends a hello frame {"token", "answer"} carrying the
   offer token and a fresh answer token, and publishes the answer token.
3. Offerer holds every connection that presents the offer token. Given
   the pasted answer, it picks the one whose hello carried the answer
   token, drops the rest and replies {"accepted": true}.
4. Both sides report OPEN; every later frame is a chat frame.

Frames on the stream are prefixed with their length (4 bytes, big-endian).
"""

import asyncio
import json
import logging
import secrets
import struct
from typing import Any, Dict, Optional, Tuple

from .constants import (
    CONNECT_TIMEOUT,
    DEFAULT_HOST,
    DEFAULT_PORT,
    DESCRIPTOR_ANSWER,
    DESCRIPTOR_OFFER,
    FRAME_LENGTH_PREFIX_SIZE,
    MAX_FRAME_SIZE,
    MAX_PENDING_PEERS,
    TOKEN_SIZE,
)
from .errors import ErrorCode, ProtocolError, TransportFailure
from .protocol import Protocol
from .transport import EventKind, PeerTransport

logger = logging.getLogger(__name__)


class TcpTransport(PeerTransport):
    """PeerTransport over a single TCP connection."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        connect_timeout: float = CONNECT_TIMEOUT,
    ):
        """
        Initialize transport.

        Args:
            host: Address to listen on (offerer) and to advertise
            port: Port to listen on; 0 picks a free one
            connect_timeout: Seconds to wait for the peer during the handshake
        """
        super().__init__()
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout

        self.offer_token: Optional[str] = None
        self.answer_token: Optional[str] = None

        self.server: Optional[asyncio.AbstractServer] = None
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.receive_task: Optional[asyncio.Task] = None

        self._peer_arrived: Optional[asyncio.Event] = None
        self._candidates: Dict[str, Tuple[asyncio.StreamReader, asyncio.StreamWriter]] = {}
        self._open = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._open and not self._closed

    async def _write_frame(self, writer: asyncio.StreamWriter, payload: bytes) -> None:
        if len(payload) > MAX_FRAME_SIZE:
            raise ProtocolError(
                ErrorCode.E207_MESSAGE_TOO_LARGE,
                f"Frame too large: {len(payload)} bytes",
                {"size": len(payload), "max_size": MAX_FRAME_SIZE},
            )
        writer.write(struct.pack("!I", len(payload)) + payload)
        await writer.drain()

    async def _read_frame(self, reader: asyncio.StreamReader) -> bytes:
        header = await reader.readexactly(FRAME_LENGTH_PREFIX_SIZE)
        (length,) = struct.unpack("!I", header)
        if length > MAX_FRAME_SIZE:
            raise ProtocolError(
                ErrorCode.E207_MESSAGE_TOO_LARGE,
                f"Incoming frame too large: {length} bytes",
                {"size": length, "max_size": MAX_FRAME_SIZE},
            )
        return await reader.readexactly(length)

    @staticmethod
    def _parse_json(data: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(data.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as e:
            raise ProtocolError(
                ErrorCode.E209_HANDSHAKE_FAILED, f"Malformed handshake frame: {e}"
            ) from e
        if not isinstance(payload, dict):
            raise ProtocolError(ErrorCode.E209_HANDSHAKE_FAILED, "Handshake frame is not an object")
        return payload

    # Offering side

    async def create_offer(self) -> str:
        self.offer_token = secrets.token_hex(TOKEN_SIZE)
        self._peer_arrived = asyncio.Event()
        try:
            self.server = await asyncio.start_server(self._handle_peer, self.host, self.port)
        except OSError as e:
            raise TransportFailure(
                ErrorCode.E201_CONNECTION_FAILED,
                f"Cannot listen on {self.host}:{self.port}: {e}",
                {"host": self.host, "port": self.port},
            ) from e

        self.port = self.server.sockets[0].getsockname()[1]
        logger.info(f"Listening for peer on {self.host}:{self.port}")
        self._emit(EventKind.STATE, f"listening on {self.host}:{self.port}")
        return Protocol.encode_descriptor(
            DESCRIPTOR_OFFER, {"host": self.host, "port": self.port, "token": self.offer_token}
        )

    async def _handle_peer(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """Hold every connection that presents our offer token until the answer picks one."""
        address = writer.get_extra_info("peername")
        try:
            hello = self._parse_json(
                await asyncio.wait_for(self._read_frame(reader), timeout=self.connect_timeout)
            )
        except (asyncio.TimeoutError, asyncio.IncompleteReadError, ProtocolError, OSError) as e:
            logger.warning(f"Rejected connection from {address}: {e}")
            writer.close()
            return

        token = hello.get("token")
        answer = hello.get("answer")
        if (
            self._open
            or self._closed
            or not isinstance(token, str)
            or not isinstance(answer, str)
            or not secrets.compare_digest(token, self.offer_token or "")
            or answer in self._candidates
            or len(self._candidates) >= MAX_PENDING_PEERS
        ):
            logger.warning(f"Rejected connection from {address}: bad token or no room")
            writer.close()
            return

        self._candidates[answer] = (reader, writer)
        logger.debug(f"Peer connected from {address}")
        self._emit(EventKind.STATE, f"peer connected from {address[0]}:{address[1]}")
        self._peer_arrived.set()

    def _find_candidate(
        self, answer_token: str
    ) -> Optional[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]:
        for token, streams in self._candidates.items():
            if secrets.compare_digest(token, answer_token):
                return streams
        return None

    async def _wait_for_candidate(
        self, answer_token: str
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        while True:
            streams = self._find_candidate(answer_token)
            if streams is not None:
                return streams
            self._peer_arrived.clear()
            await self._peer_arrived.wait()

    def _drop_candidates(self) -> None:
        for _, writer in self._candidates.values():
            if writer is not self.writer:
                writer.close()
        self._candidates.clear()

    async def accept_answer(self, answer: str) -> None:
        """
        Finalize with the peer's answer.

        The connection whose hello carried the answer's token becomes the
        channel; all other candidates are dropped. A non-matching answer
        leaves the candidates in place so a corrected answer can be retried.
        """
        body = Protocol.decode_descriptor(answer, DESCRIPTOR_ANSWER)
        token = body.get("token")
        answer_token = body.get("answer")
        if not isinstance(token, str) or not isinstance(answer_token, str):
            raise ProtocolError(ErrorCode.E206_INVALID_MESSAGE, "Answer is missing its tokens")
        if self.offer_token is None or not secrets.compare_digest(token, self.offer_token):
            raise ProtocolError(
                ErrorCode.E209_HANDSHAKE_FAILED, "Answer does not belong to this offer"
            )

        try:
            self.reader, self.writer = await asyncio.wait_for(
                self._wait_for_candidate(answer_token), timeout=self.connect_timeout
            )
        except asyncio.TimeoutError as e:
            if self._candidates:
                raise ProtocolError(
                    ErrorCode.E209_HANDSHAKE_FAILED, "Answer does not match any connected peer"
                ) from e
            raise TransportFailure(
                ErrorCode.E202_CONNECTION_TIMEOUT,
                f"Peer did not connect within {self.connect_timeout}s",
            ) from e

        self.answer_token = answer_token
        self._drop_candidates()

        try:
            await self._write_frame(self.writer, json.dumps({"accepted": True}).encode("utf-8"))
        except OSError as e:
            raise TransportFailure(
                ErrorCode.E204_SEND_FAILED, f"Failed to confirm answer: {e}"
            ) from e

        # One peer per offer
        self.server.close()
        self._start_receiving()

    # Answering side

    async def create_answer(self, offer: str) -> str:
        body = Protocol.decode_descriptor(offer, DESCRIPTOR_OFFER)
        host = body.get("host")
        port = body.get("port")
        token = body.get("token")
        if (
            not isinstance(host, str)
            or not isinstance(port, int)
            or isinstance(port, bool)
            or not 0 < port < 65536
            or not isinstance(token, str)
        ):
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE, "Offer lacks a valid host, port or token"
            )

        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.connect_timeout
            )
        except asyncio.TimeoutError as e:
            raise TransportFailure(
                ErrorCode.E202_CONNECTION_TIMEOUT,
                f"Connection to {host}:{port} timed out",
                {"host": host, "port": port},
            ) from e
        except OSError as e:
            raise TransportFailure(
                ErrorCode.E201_CONNECTION_FAILED,
                f"Connection to {host}:{port} failed: {e}",
                {"host": host, "port": port},
            ) from e

        self.offer_token = token
        self.answer_token = secrets.token_hex(TOKEN_SIZE)
        hello = {"token": token, "answer": self.answer_token}
        try:
            await self._write_frame(self.writer, json.dumps(hello).encode("utf-8"))
        except OSError as e:
            raise TransportFailure(ErrorCode.E204_SEND_FAILED, f"Handshake failed: {e}") from e

        self._emit(EventKind.STATE, f"connected to {host}:{port}, waiting for acceptance")
        self.receive_task = asyncio.create_task(self._await_acceptance())
        return Protocol.encode_descriptor(
            DESCRIPTOR_ANSWER, {"token": token, "answer": self.answer_token}
        )

    async def _await_acceptance(self) -> None:
        try:
            reply = self._parse_json(await self._read_frame(self.reader))
        except (asyncio.IncompleteReadError, OSError) as e:
            await self._fail(f"Offering peer went away before accepting: {e}")
            return
        except ProtocolError as e:
            await self._fail(e.message)
            return

        if reply.get("accepted") is not True:
            await self._fail("Offering peer rejected the answer")
            return

        self.receive_task = None
        self._start_receiving()

    # Both sides

    def _start_receiving(self) -> None:
        self._open = True
        self._emit(EventKind.STATE, "connected")
        self._emit(EventKind.OPEN)
        self.receive_task = asyncio.create_task(self._receive_loop())

    async def _receive_loop(self) -> None:
        """Forward frames to the event handler until the stream ends."""
        try:
            while not self._closed:
                data = await self._read_frame(self.reader)
                self._emit(EventKind.MESSAGE, data)
        except asyncio.IncompleteReadError:
            logger.info("Peer closed the connection")
            await self.close()
        except ProtocolError as e:
            await self._fail(e.message)
        except OSError as e:
            await self._fail(f"Connection lost: {e}")

    async def _fail(self, reason: str) -> None:
        if self._closed:
            return
        logger.warning(f"Transport failure: {reason}")
        self._emit(EventKind.ERROR, reason)
        await self.close()

    async def send(self, data: bytes) -> None:
        if not self.is_open:
            raise TransportFailure(ErrorCode.E204_SEND_FAILED, "Channel is not open")
        try:
            await self._write_frame(self.writer, data)
        except OSError as e:
            await self._fail(f"Send failed: {e}")
            raise TransportFailure(ErrorCode.E204_SEND_FAILED, f"Send failed: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._open = False

        current = asyncio.current_task()
        if self.receive_task and self.receive_task is not current:
            self.receive_task.cancel()
        if self.server is not None:
            self.server.close()
        self._drop_candidates()
        if self.writer is not None:
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error while closing stream: {e}")

        self._emit(EventKind.CLOSED)
