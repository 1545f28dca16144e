"""
Duet - Encrypted chat session.

Created by duet contributors

ChatSession is the public API of the package. It drives the handshake
through a PeerTransport, runs the one-time salt exchange, derives the
session key from the shared passphrase, and seals/opens every message with
AES-256-GCM.

Concurrency model:
- Transport events are pushed onto a single asyncio.Queue and handled one
  at a time by a dispatcher task, so state transitions never interleave.
- Key derivation runs in a worker thread; its result comes back through
  the same queue.
- Callers of send() before the channel is open and the key is ready wait
  on asyncio.Events with a bounded timeout instead of polling.

Undecryptable inbound frames do not end the session. They are logged as
warnings with error code E102, reported through on_warning, and added to
the log as unauthenticated peer entries showing the raw frame.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Deque, Iterator, List, Optional, Tuple, Union

from .config import Config
from .connection_fsm import SessionEvent, SessionState, SessionStateMachine
from .constants import (
    DESCRIPTOR_ANSWER,
    DESCRIPTOR_OFFER,
    MAX_TEXT_MESSAGE_SIZE,
    PENDING_FRAME_LIMIT,
    SALT_SIZE,
    SEND_TIMEOUT,
)
from .crypto import CryptoProvider, FrameCodec, KdfParams, KeyDerivation
from .errors import (
    AuthenticationError,
    CryptoError,
    DuetError,
    ErrorCode,
    NotReadyError,
    ProtocolError,
    TransportFailure,
)
from .protocol import ControlFrame, DataFrame, Protocol
from .salt_exchange import Role, SaltExchange
from .transport import EventKind, PeerTransport, TransportEvent

logger = logging.getLogger(__name__)


class Origin(Enum):
    """Who wrote a message."""

    SELF = "self"
    PEER = "peer"


@dataclass(frozen=True)
class Message:
    """
    A chat log entry.

    Attributes:
        origin: SELF for sent messages, PEER for received ones
        text: Message text (raw frame text if authenticated is False)
        timestamp: UTC time the entry was created
        authenticated: False for inbound frames that failed to decrypt
    """

    origin: Origin
    text: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    authenticated: bool = True


class MessageLog:
    """Ordered, append-only message log held in memory for one session."""

    def __init__(self):
        self._entries: List[Message] = []

    def append(self, message: Message) -> None:
        self._entries.append(message)

    def entries(self) -> Tuple[Message, ...]:
        return tuple(self._entries)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index: int) -> Message:
        return self._entries[index]


@dataclass(frozen=True)
class _KeyDerived:
    """Internal event: key derivation finished (key) or failed (error)."""

    key: Optional[bytes] = None
    error: Optional[CryptoError] = None


QueuedEvent = Union[TransportEvent, _KeyDerived]


class ChatSession:
    """
    One-to-one encrypted chat over a PeerTransport.

    Typical offerer flow::

        session = ChatSession(transport, passphrase)
        offer = await session.create_offer()      # share with peer
        await session.finalize(answer_from_peer)  # paste peer's answer
        await session.send("hello")

    Typical answerer flow::

        session = ChatSession(transport, passphrase)
        answer = await session.accept_offer(offer_from_peer)  # share back
        await session.send("hi")
    """

    def __init__(
        self,
        transport: PeerTransport,
        passphrase: str,
        kdf_params: Optional[KdfParams] = None,
        provider: Optional[CryptoProvider] = None,
        send_timeout: float = SEND_TIMEOUT,
        pending_frame_limit: int = PENDING_FRAME_LIMIT,
    ):
        """
        Initialize a session in the IDLE state.

        Args:
            transport: Transport used for this session only
            passphrase: Shared secret; must match the peer's exactly
            kdf_params: KDF to advertise when offering (answerers adopt the offer's)
            provider: Crypto primitives and randomness source
            send_timeout: Seconds send() waits for readiness before NotReadyError
            pending_frame_limit: Data frames kept while waiting for the salt
        """
        self.transport = transport
        self.provider = provider or CryptoProvider()
        self.kdf = KeyDerivation(kdf_params, self.provider)
        self.codec = FrameCodec(self.provider)
        self.send_timeout = send_timeout
        self.pending_frame_limit = pending_frame_limit

        self._passphrase: Optional[bytes] = passphrase.encode("utf-8")
        self._key: Optional[bytes] = None
        self.role: Optional[Role] = None
        self.salt_exchange: Optional[SaltExchange] = None
        self.messages = MessageLog()

        self.fsm = SessionStateMachine()
        self.fsm.on_state_change = self._on_state_change

        self._events: "asyncio.Queue[QueuedEvent]" = asyncio.Queue()
        self._pending_frames: Deque[DataFrame] = deque()
        self._dispatcher: Optional[asyncio.Task] = None
        self._key_task: Optional[asyncio.Task] = None
        self._channel_open = asyncio.Event()
        self._key_ready = asyncio.Event()
        self._terminated = asyncio.Event()

        # Callbacks
        self.on_message: Optional[Callable[[Message], None]] = None
        self.on_status: Optional[Callable[[str], None]] = None
        self.on_warning: Optional[Callable[[DuetError], None]] = None

        self.transport.set_event_handler(self._events.put_nowait)

    @classmethod
    def from_config(cls, transport: PeerTransport, passphrase: str, config: Config) -> "ChatSession":
        """Build a session using the [crypto] and [session] configuration sections."""
        return cls(
            transport,
            passphrase,
            kdf_params=config.kdf_params(),
            send_timeout=config.get("session", "send_timeout"),
            pending_frame_limit=config.get("session", "pending_frame_limit"),
        )

    # Observable state

    @property
    def state(self) -> SessionState:
        return self.fsm.get_state()

    @property
    def status(self) -> str:
        """Human-readable status line."""
        text = self.state.value
        if self.state == SessionState.OPEN and not self.is_ready:
            text += " (waiting for key)"
        if self.state == SessionState.FAILED and self.fsm.get_error_message():
            text += f": {self.fsm.get_error_message()}"
        return text

    @property
    def is_ready(self) -> bool:
        """Whether messages can be sent right now."""
        return self.state == SessionState.OPEN and self._key is not None

    def _notify(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Session callback error: {e}")

    def _on_state_change(self, old_state: SessionState, new_state: SessionState) -> None:
        self._notify(self.on_status, self.status)

    # Handshake

    def _require_state(self, action: str, *states: SessionState) -> None:
        if self.state not in states:
            raise ProtocolError(
                ErrorCode.E210_INVALID_STATE,
                f"Cannot {action} in state {self.state.name}",
                {"state": self.state.name},
            )

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None:
            self._dispatcher = asyncio.create_task(self._dispatch_loop())

    def _start_key_derivation(self, salt: bytes) -> None:
        self._key_task = asyncio.create_task(self._derive_key(salt))

    async def _derive_key(self, salt: bytes) -> None:
        passphrase = self._passphrase
        if passphrase is None:
            return
        try:
            key = await asyncio.to_thread(self.kdf.derive, passphrase, salt)
        except CryptoError as e:
            self._events.put_nowait(_KeyDerived(error=e))
            return
        except Exception as e:
            self._events.put_nowait(
                _KeyDerived(
                    error=CryptoError(
                        ErrorCode.E108_KEY_DERIVATION_FAILED,
                        f"Key derivation failed: {type(e).__name__}: {e}",
                    )
                )
            )
            return
        self._events.put_nowait(_KeyDerived(key=key))

    async def create_offer(self) -> str:
        """
        Begin the offerer flow.

        Generates the session salt, starts deriving the key immediately and
        asks the transport for an offer.

        Returns:
            Offer descriptor for the user to share

        Raises:
            ProtocolError: If the session is not IDLE
            TransportFailure: If the transport cannot prepare an offer
        """
        self._require_state("create an offer", SessionState.IDLE)
        self._ensure_dispatcher()
        self.role = Role.OFFERER
        self.fsm.transition(SessionEvent.OFFER_REQUESTED)

        salt = self.provider.random_bytes(SALT_SIZE)
        self.salt_exchange = SaltExchange(Role.OFFERER, salt)
        self._start_key_derivation(salt)

        try:
            transport_offer = await self.transport.create_offer()
        except TransportFailure as e:
            await self._fail(e)
            raise

        descriptor = Protocol.encode_descriptor(
            DESCRIPTOR_OFFER, {"transport": transport_offer, "kdf": self.kdf.params.to_dict()}
        )
        self.fsm.transition(SessionEvent.OFFER_CREATED)
        return descriptor

    async def accept_offer(self, descriptor: str) -> str:
        """
        Begin the answerer flow from a pasted offer.

        Returns:
            Answer descriptor for the user to send back

        Raises:
            ProtocolError: If the session is not IDLE or the offer is
                malformed; the session stays IDLE
            TransportFailure: If the offering peer cannot be reached
        """
        self._require_state("accept an offer", SessionState.IDLE)
        body = Protocol.decode_descriptor(descriptor, DESCRIPTOR_OFFER)
        transport_offer = body.get("transport")
        if not isinstance(transport_offer, str):
            raise ProtocolError(ErrorCode.E206_INVALID_MESSAGE, "Offer has no transport descriptor")
        try:
            kdf_params = KdfParams.from_dict(body.get("kdf"))
        except CryptoError as e:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE, f"Offer has unusable KDF parameters: {e.message}"
            ) from e

        self._ensure_dispatcher()
        previous_kdf = self.kdf
        self.role = Role.ANSWERER
        self.kdf = KeyDerivation(kdf_params, self.provider)
        self.salt_exchange = SaltExchange(Role.ANSWERER)
        self.fsm.transition(SessionEvent.OFFER_RECEIVED)
        try:
            transport_answer = await self.transport.create_answer(transport_offer)
        except ProtocolError:
            self.role = None
            self.kdf = previous_kdf
            self.salt_exchange = None
            self.fsm.transition(SessionEvent.STEP_REJECTED)
            raise
        except TransportFailure as e:
            await self._fail(e)
            raise

        return Protocol.encode_descriptor(DESCRIPTOR_ANSWER, {"transport": transport_answer})

    async def finalize(self, descriptor: str) -> None:
        """
        Complete the offerer flow with the peer's answer.

        Raises:
            ProtocolError: If this session is not an offerer waiting for an
                answer, or the answer is malformed; state is unchanged
            TransportFailure: If the connection cannot be completed
        """
        if self.role != Role.OFFERER:
            raise ProtocolError(
                ErrorCode.E210_INVALID_STATE, "Only the offering side accepts an answer"
            )
        self._require_state("accept an answer", SessionState.AWAITING_ANSWER)
        body = Protocol.decode_descriptor(descriptor, DESCRIPTOR_ANSWER)
        transport_answer = body.get("transport")
        if not isinstance(transport_answer, str):
            raise ProtocolError(ErrorCode.E206_INVALID_MESSAGE, "Answer has no transport descriptor")

        self.fsm.transition(SessionEvent.ANSWER_ACCEPTED)
        try:
            await self.transport.accept_answer(transport_answer)
        except ProtocolError:
            self.fsm.transition(SessionEvent.STEP_REJECTED)
            raise
        except TransportFailure as e:
            await self._fail(e)
            raise

    # Event dispatch

    async def _dispatch_loop(self) -> None:
        """Drain queued events serially until the session ends."""
        while not self.fsm.is_terminal():
            event = await self._events.get()
            try:
                if isinstance(event, _KeyDerived):
                    await self._handle_key_derived(event)
                else:
                    await self._handle_transport_event(event)
            except Exception as e:
                logger.error(f"Error handling session event {event}: {e}", exc_info=True)

    async def _handle_transport_event(self, event: TransportEvent) -> None:
        if self.fsm.is_terminal():
            return

        if event.kind == EventKind.OPEN:
            if not self.fsm.transition(SessionEvent.CHANNEL_OPENED):
                return
            self._channel_open.set()
            if self.role == Role.OFFERER:
                try:
                    await self.salt_exchange.send(self.transport)
                except TransportFailure as e:
                    await self._fail(e)

        elif event.kind == EventKind.MESSAGE:
            self._handle_frame(event.data)

        elif event.kind == EventKind.STATE:
            logger.debug(f"Transport state: {event.data}")
            self._notify(self.on_status, f"{self.status} ({event.data})")

        elif event.kind == EventKind.ERROR:
            await self._fail(TransportFailure(ErrorCode.E201_CONNECTION_FAILED, str(event.data)))

        elif event.kind == EventKind.CLOSED:
            if self.role == Role.ANSWERER and not self.salt_exchange.has_salt:
                await self._fail(
                    TransportFailure(
                        ErrorCode.E203_CONNECTION_CLOSED,
                        "Channel closed before the salt arrived; no key can be derived",
                    )
                )
            elif self.state == SessionState.OPEN:
                self.fsm.transition(SessionEvent.CHANNEL_CLOSED)
                await self._teardown()
            else:
                await self._fail(
                    TransportFailure(
                        ErrorCode.E203_CONNECTION_CLOSED, "Channel closed during the handshake"
                    )
                )

    async def _handle_key_derived(self, event: _KeyDerived) -> None:
        if self.fsm.is_terminal():
            return
        if event.error is not None:
            logger.error(f"Key derivation failed: {event.error}")
            await self._fail(event.error)
            return

        self._key = event.key
        self._key_ready.set()
        logger.info("Session key ready")
        self._notify(self.on_status, self.status)

        while self._pending_frames:
            self._open_data_frame(self._pending_frames.popleft())

    def _handle_frame(self, raw: bytes) -> None:
        if self.salt_exchange is None:
            logger.warning("Dropping frame received before the handshake started")
            return
        try:
            frame = Protocol.decode_frame(raw)
        except ProtocolError as e:
            self._record_undecryptable(raw, e)
            return

        if isinstance(frame, ControlFrame):
            try:
                salt = self.salt_exchange.receive(frame)
            except ProtocolError as e:
                logger.warning(f"Ignoring control frame: {e}")
                self._notify(self.on_warning, e)
                return
            self._start_key_derivation(salt)
            return

        if self._key is None:
            if len(self._pending_frames) >= self.pending_frame_limit:
                self._record_undecryptable(
                    raw,
                    NotReadyError(
                        ErrorCode.E211_NOT_READY,
                        "Data frame arrived before the key and the pending buffer is full",
                    ),
                )
                return
            self._pending_frames.append(frame)
            return

        self._open_data_frame(frame)

    def _open_data_frame(self, frame: DataFrame) -> None:
        try:
            text = self.codec.open_text(self._key, frame.iv, frame.data)
        except AuthenticationError as e:
            self._record_undecryptable(Protocol.encode_frame(frame), e)
            return
        self._append(Message(Origin.PEER, text))

    def _record_undecryptable(self, raw: Union[str, bytes], error: DuetError) -> None:
        """Keep a bad frame visible to the user without ending the session."""
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        logger.warning(
            f"[{error.code.value}] Undecryptable frame from peer "
            f"({len(text)} chars): {error.message}. Check that both sides use the same passphrase."
        )
        self._notify(self.on_warning, error)
        self._append(Message(Origin.PEER, text, authenticated=False))

    def _append(self, message: Message) -> None:
        self.messages.append(message)
        if message.origin == Origin.PEER:
            self._notify(self.on_message, message)

    # Sending

    async def _wait_for(self, condition: Callable[[], Awaitable], timeout: float, what: str) -> None:
        if self.fsm.is_terminal():
            raise TransportFailure(
                ErrorCode.E203_CONNECTION_CLOSED,
                f"Session is {self.state.name}",
                {"state": self.state.name},
            )

        ready = asyncio.ensure_future(condition())
        ended = asyncio.ensure_future(self._terminated.wait())
        try:
            await asyncio.wait({ready, ended}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (ready, ended):
                task.cancel()

        if self.fsm.is_terminal():
            raise TransportFailure(
                ErrorCode.E203_CONNECTION_CLOSED,
                f"Session ended while waiting for {what}",
                {"state": self.state.name, "error": self.fsm.get_error_message()},
            )
        if not (ready.done() and not ready.cancelled()):
            raise NotReadyError(
                ErrorCode.E211_NOT_READY,
                f"Timed out after {timeout}s waiting for {what}",
                {
                    "timeout": timeout,
                    "channel_open": self._channel_open.is_set(),
                    "key_ready": self._key_ready.is_set(),
                },
            )

    async def wait_until_open(self, timeout: Optional[float] = None) -> None:
        """
        Wait for the channel to open.

        Raises:
            NotReadyError: On timeout
            TransportFailure: If the session ends first
        """
        await self._wait_for(self._channel_open.wait, timeout or self.send_timeout, "channel open")

    async def wait_until_ready(self, timeout: Optional[float] = None) -> None:
        """
        Wait for the channel to open and the session key to be derived.

        Raises:
            NotReadyError: On timeout
            TransportFailure: If the session ends first
        """

        async def both() -> None:
            await self._channel_open.wait()
            await self._key_ready.wait()

        await self._wait_for(both, timeout or self.send_timeout, "channel and key")

    async def wait_closed(self) -> None:
        """Wait until the session is CLOSED or FAILED."""
        await self._terminated.wait()

    async def send(self, text: str) -> Message:
        """
        Encrypt and transmit a message.

        Waits up to send_timeout for the channel and key. The message is
        logged as origin SELF once the transport accepted the frame.

        Returns:
            The logged message

        Raises:
            ProtocolError: If the text is too large
            NotReadyError: If readiness was not reached in time
            TransportFailure: If the session ended or the send failed
        """
        size = len(text.encode("utf-8"))
        if size > MAX_TEXT_MESSAGE_SIZE:
            raise ProtocolError(
                ErrorCode.E207_MESSAGE_TOO_LARGE,
                f"Message too large: {size} bytes",
                {"size": size, "max_size": MAX_TEXT_MESSAGE_SIZE},
            )

        await self.wait_until_ready()
        if self._key is None:
            raise TransportFailure(ErrorCode.E203_CONNECTION_CLOSED, "Session key was discarded")

        nonce, ciphertext = self.codec.seal_text(self._key, text)
        frame = Protocol.encode_frame(DataFrame(iv=nonce, data=ciphertext))
        await self.transport.send(frame.encode("utf-8"))

        message = Message(Origin.SELF, text)
        self._append(message)
        return message

    # Teardown

    async def _fail(self, error: DuetError) -> None:
        logger.error(f"Session failed: {error}")
        self.fsm.transition(SessionEvent.TRANSPORT_ERROR, error.message)
        await self._teardown()

    async def _teardown(self) -> None:
        """Drop key material and release the transport."""
        self._key = None
        self._passphrase = None
        self._pending_frames.clear()
        if self.salt_exchange is not None:
            self.salt_exchange.discard()
        self._terminated.set()

        if self._key_task is not None and not self._key_task.done():
            self._key_task.cancel()
        await self.transport.close()

        current = asyncio.current_task()
        if self._dispatcher is not None and self._dispatcher is not current:
            self._dispatcher.cancel()

    async def close(self) -> None:
        """End the session from any state. Safe to call more than once."""
        if not self.fsm.is_terminal():
            self.fsm.transition(SessionEvent.CLOSE_REQUESTED)
        await self._teardown()

    async def __aenter__(self) -> "ChatSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        role = self.role.value if self.role else "none"
        return f"ChatSession(state={self.state.name}, role={role}, messages={len(self.messages)})"
