"""
Duet - Chat session tests.

End-to-end tests over the in-memory loopback transport: handshake, salt
exchange, encrypted messaging, readiness waits, undecryptable frames and
teardown.
"""

import asyncio
import base64
import json
import logging

import pytest

from duet.config import Config
from duet.connection_fsm import SessionState
from duet.constants import DESCRIPTOR_ANSWER, DESCRIPTOR_OFFER, MAX_TEXT_MESSAGE_SIZE
from duet.crypto import CryptoProvider, FrameCodec, KdfParams, KeyDerivation
from duet.errors import (
    AuthenticationError,
    ErrorCode,
    NotReadyError,
    ProtocolError,
    TransportFailure,
)
from duet.protocol import ControlFrame, DataFrame, Protocol
from duet.session import ChatSession, Origin
from duet.transport import LoopbackTransport


SALT = bytes(range(16))


class TamperingTransport(LoopbackTransport):
    """Loopback transport that flips one ciphertext bit in every data frame."""

    async def send(self, data: bytes) -> None:
        payload = json.loads(data)
        if "data" in payload:
            payload["data"][0] ^= 0x01
            data = json.dumps(payload).encode("utf-8")
        await super().send(data)


class ExplodingKdfProvider(CryptoProvider):
    """Provider whose KDF fails with a non-crypto exception."""

    def kdf(self, params, passphrase, salt):
        raise OverflowError("int too big to convert")


async def open_raw_offerer(hub, answerer: ChatSession) -> LoopbackTransport:
    """Connect a bare transport as the offering peer, without a session or salt."""
    raw = hub.create_transport()
    transport_offer = await raw.create_offer()
    offer = Protocol.encode_descriptor(
        DESCRIPTOR_OFFER, {"transport": transport_offer, "kdf": KdfParams().to_dict()}
    )
    answer = await answerer.accept_offer(offer)
    await raw.accept_answer(Protocol.decode_descriptor(answer, DESCRIPTOR_ANSWER)["transport"])
    return raw


@pytest.mark.asyncio
class TestHandshake:
    """Tests for the offer/answer handshake."""

    async def test_hello_hi(self, hub, passphrase, connect, until):
        """Both sides see both messages, in order, authenticated."""
        alice = ChatSession(hub.create_transport(), passphrase)
        bob = ChatSession(hub.create_transport(), passphrase)

        await connect(alice, bob)
        assert alice.state == SessionState.OPEN
        assert bob.state == SessionState.OPEN

        await alice.send("hello")
        await until(lambda: len(bob.messages) == 1)
        await bob.send("hi")
        await until(lambda: len(alice.messages) == 2)

        assert [(m.origin, m.text) for m in alice.messages] == [
            (Origin.SELF, "hello"),
            (Origin.PEER, "hi"),
        ]
        assert [(m.origin, m.text) for m in bob.messages] == [
            (Origin.PEER, "hello"),
            (Origin.SELF, "hi"),
        ]
        assert all(m.authenticated for m in bob.messages)

        await alice.close()
        await bob.close()

    async def test_messages_arrive_in_send_order(self, hub, passphrase, connect, until):
        alice = ChatSession(hub.create_transport(), passphrase)
        bob = ChatSession(hub.create_transport(), passphrase)
        await connect(alice, bob)

        for i in range(20):
            await alice.send(f"message {i}")
        await until(lambda: len(bob.messages) == 20)

        assert [m.text for m in bob.messages] == [f"message {i}" for i in range(20)]

        await alice.close()
        await bob.close()

    async def test_state_progression(self, hub, passphrase, until):
        alice = ChatSession(hub.create_transport(), passphrase)
        bob = ChatSession(hub.create_transport(), passphrase)
        statuses = []
        alice.on_status = statuses.append

        offer = await alice.create_offer()
        assert alice.state == SessionState.AWAITING_ANSWER

        answer = await bob.accept_offer(offer)
        assert bob.state == SessionState.ANSWERING

        await alice.finalize(answer)
        await until(lambda: alice.state == SessionState.OPEN)

        assert SessionState.AWAITING_ANSWER.value in statuses
        assert any(s.startswith(SessionState.OPEN.value) for s in statuses)

        await alice.close()
        await bob.close()

    async def test_answerer_adopts_offered_kdf(self, hub, passphrase):
        alice = ChatSession(
            hub.create_transport(), passphrase, kdf_params=KdfParams(iterations=150000)
        )
        bob = ChatSession(hub.create_transport(), passphrase)

        await bob.accept_offer(await alice.create_offer())

        assert bob.kdf.params.iterations == 150000

        await alice.close()
        await bob.close()

    async def test_offerer_salt_comes_from_provider(self, hub, passphrase, counting_provider):
        alice = ChatSession(hub.create_transport(), passphrase, provider=counting_provider)
        await alice.create_offer()

        assert alice.salt_exchange.salt == bytes(range(16))
        await alice.close()

    async def test_malformed_offer_keeps_idle(self, hub, passphrase):
        bob = ChatSession(hub.create_transport(), passphrase)

        for bad in ["", "not a descriptor", Protocol.encode_descriptor(DESCRIPTOR_ANSWER, {})]:
            with pytest.raises(ProtocolError):
                await bob.accept_offer(bad)
            assert bob.state == SessionState.IDLE

        no_transport = Protocol.encode_descriptor(DESCRIPTOR_OFFER, {"kdf": KdfParams().to_dict()})
        with pytest.raises(ProtocolError):
            await bob.accept_offer(no_transport)
        assert bob.state == SessionState.IDLE

        weak_kdf = Protocol.encode_descriptor(
            DESCRIPTOR_OFFER,
            {"transport": "x", "kdf": {"name": "pbkdf2-sha256", "iterations": 10}},
        )
        with pytest.raises(ProtocolError):
            await bob.accept_offer(weak_kdf)
        assert bob.state == SessionState.IDLE

        await bob.close()

    async def test_deeply_nested_offer_rejected(self, hub, passphrase):
        bob = ChatSession(hub.create_transport(), passphrase)

        with pytest.raises(ProtocolError):
            await bob.accept_offer(base64.b64encode(b"[" * 100000).decode())
        assert bob.state == SessionState.IDLE

        await bob.close()

    async def test_offer_with_unbounded_work_factor_rejected(self, hub, passphrase):
        """An offer demanding an absurd iteration count never reaches the KDF."""
        bob = ChatSession(hub.create_transport(), passphrase)
        offer = Protocol.encode_descriptor(
            DESCRIPTOR_OFFER,
            {"transport": "x", "kdf": {"name": "pbkdf2-sha256", "iterations": 2**70}},
        )

        with pytest.raises(ProtocolError):
            await bob.accept_offer(offer)
        assert bob.state == SessionState.IDLE

        await bob.close()

    async def test_key_derivation_crash_fails_session(self, hub, passphrase, until):
        """Unexpected KDF errors end the session with a status instead of hanging."""
        alice = ChatSession(hub.create_transport(), passphrase, provider=ExplodingKdfProvider())
        errors = []
        alice.fsm.on_error = errors.append

        await alice.create_offer()
        await until(lambda: alice.state == SessionState.FAILED)

        assert "OverflowError" in alice.fsm.get_error_message()
        assert errors == [alice.fsm.get_error_message()]
        with pytest.raises(TransportFailure):
            await alice.send("never")

    async def test_transport_rejecting_offer_returns_to_idle(self, hub, passphrase):
        """An offer whose inner transport descriptor is junk is rejected without leaving IDLE."""
        bob = ChatSession(hub.create_transport(), passphrase)
        offer = Protocol.encode_descriptor(
            DESCRIPTOR_OFFER, {"transport": "junk", "kdf": KdfParams().to_dict()}
        )

        with pytest.raises(ProtocolError):
            await bob.accept_offer(offer)

        assert bob.state == SessionState.IDLE
        assert bob.role is None
        await bob.close()

    async def test_offer_to_nobody_fails(self, hub, passphrase):
        alice = ChatSession(hub.create_transport(), passphrase)
        bob = ChatSession(hub.create_transport(), passphrase)
        offer = await alice.create_offer()
        await alice.close()

        with pytest.raises(TransportFailure):
            await bob.accept_offer(offer)
        assert bob.state == SessionState.FAILED

    async def test_malformed_answer_keeps_awaiting(self, hub, passphrase):
        alice = ChatSession(hub.create_transport(), passphrase)
        await alice.create_offer()

        with pytest.raises(ProtocolError):
            await alice.finalize("garbage")
        assert alice.state == SessionState.AWAITING_ANSWER

        await alice.close()

    async def test_answer_for_another_offer_rejected(self, hub, passphrase):
        alice = ChatSession(hub.create_transport(), passphrase)
        carol = ChatSession(hub.create_transport(), passphrase)
        bob = ChatSession(hub.create_transport(), passphrase)
        dave = ChatSession(hub.create_transport(), passphrase)

        offer = await alice.create_offer()
        answer_for_carol = await bob.accept_offer(await carol.create_offer())

        with pytest.raises(ProtocolError):
            await alice.finalize(answer_for_carol)
        assert alice.state == SessionState.AWAITING_ANSWER

        # The rejected answer does not spoil the offer
        await alice.finalize(await dave.accept_offer(offer))
        await alice.wait_until_ready()
        await dave.wait_until_ready()
        assert alice.is_ready

        for session in (alice, bob, carol, dave):
            await session.close()

    async def test_operations_in_wrong_state(self, hub, passphrase):
        alice = ChatSession(hub.create_transport(), passphrase)
        bob = ChatSession(hub.create_transport(), passphrase)

        offer = await alice.create_offer()
        with pytest.raises(ProtocolError) as exc_info:
            await alice.create_offer()
        assert exc_info.value.code == ErrorCode.E210_INVALID_STATE

        with pytest.raises(ProtocolError):
            await alice.accept_offer(offer)

        answer = await bob.accept_offer(offer)
        with pytest.raises(ProtocolError):
            await bob.finalize(answer)

        await alice.close()
        await bob.close()


@pytest.mark.asyncio
class TestSend:
    """Tests for sending and readiness."""

    async def test_send_before_ready_is_delivered_after_handshake(
        self, hub, passphrase, until
    ):
        alice = ChatSession(hub.create_transport(), passphrase)
        bob = ChatSession(hub.create_transport(), passphrase)

        answer = await bob.accept_offer(await alice.create_offer())
        early = asyncio.create_task(bob.send("sent early"))
        await asyncio.sleep(0)
        assert not early.done()

        await alice.finalize(answer)
        message = await early

        assert message.origin == Origin.SELF
        await until(lambda: len(alice.messages) == 1)
        assert alice.messages[0].text == "sent early"

        await alice.close()
        await bob.close()

    async def test_send_times_out_with_not_ready(self, hub, passphrase):
        alice = ChatSession(hub.create_transport(), passphrase, send_timeout=0.05)
        await alice.create_offer()

        with pytest.raises(NotReadyError) as exc_info:
            await alice.send("too soon")

        assert exc_info.value.code == ErrorCode.E211_NOT_READY
        assert exc_info.value.details["channel_open"] is False
        assert alice.state == SessionState.AWAITING_ANSWER
        assert len(alice.messages) == 0

        await alice.close()

    async def test_pending_send_fails_when_session_closes(self, hub, passphrase):
        alice = ChatSession(hub.create_transport(), passphrase)
        await alice.create_offer()

        pending = asyncio.create_task(alice.send("never"))
        await asyncio.sleep(0)
        await alice.close()

        with pytest.raises(TransportFailure):
            await pending

    async def test_oversized_message_rejected(self, hub, passphrase):
        alice = ChatSession(hub.create_transport(), passphrase)

        with pytest.raises(ProtocolError) as exc_info:
            await alice.send("x" * (MAX_TEXT_MESSAGE_SIZE + 1))

        assert exc_info.value.code == ErrorCode.E207_MESSAGE_TOO_LARGE
        await alice.close()

    async def test_data_before_salt_is_held_until_key(self, hub, passphrase, until):
        """Frames that overtake the salt are opened once the key exists."""
        bob = ChatSession(hub.create_transport(), passphrase)
        raw = await open_raw_offerer(hub, bob)
        await until(lambda: raw.is_open)

        key = KeyDerivation().derive(passphrase.encode(), SALT)
        nonce, ciphertext = FrameCodec().seal_text(key, "early bird")
        await raw.send(Protocol.encode_frame(DataFrame(iv=nonce, data=ciphertext)).encode())
        await raw.send(Protocol.encode_frame(ControlFrame(salt=SALT)).encode())

        await until(lambda: len(bob.messages) == 1)
        assert bob.messages[0].text == "early bird"
        assert bob.messages[0].authenticated
        assert bob.is_ready

        await raw.close()
        await bob.close()

    async def test_duplicate_salt_is_ignored(self, hub, passphrase, until):
        bob = ChatSession(hub.create_transport(), passphrase)
        warnings = []
        bob.on_warning = warnings.append
        raw = await open_raw_offerer(hub, bob)
        await until(lambda: raw.is_open)

        await raw.send(Protocol.encode_frame(ControlFrame(salt=SALT)).encode())
        await raw.send(Protocol.encode_frame(ControlFrame(salt=bytes(16))).encode())
        await until(lambda: len(warnings) == 1)
        await bob.wait_until_ready()

        assert isinstance(warnings[0], ProtocolError)
        assert bob.salt_exchange.salt == SALT
        assert bob.state == SessionState.OPEN

        await raw.close()
        await bob.close()


@pytest.mark.asyncio
class TestUndecryptable:
    """Frames that fail authentication are shown, flagged and logged."""

    async def test_mismatched_passphrases(self, hub, connect, until, caplog):
        alice = ChatSession(hub.create_transport(), "alpha passphrase")
        bob = ChatSession(hub.create_transport(), "bravo passphrase")
        warnings = []
        received = []
        bob.on_warning = warnings.append
        bob.on_message = received.append

        await connect(alice, bob)
        with caplog.at_level(logging.WARNING, logger="duet.session"):
            await alice.send("secret")
            await until(lambda: len(bob.messages) == 1)

        entry = bob.messages[0]
        assert entry.origin == Origin.PEER
        assert entry.authenticated is False
        assert "secret" not in entry.text
        assert json.loads(entry.text).keys() == {"iv", "data"}
        assert received == [entry]

        assert len(warnings) == 1
        assert isinstance(warnings[0], AuthenticationError)
        assert "E102" in caplog.text

        # The session survives
        assert bob.state == SessionState.OPEN

        await alice.close()
        await bob.close()

    async def test_tampered_frame_flagged(self, hub, passphrase, connect, until):
        alice = ChatSession(TamperingTransport(hub), passphrase)
        bob = ChatSession(hub.create_transport(), passphrase)

        await connect(alice, bob)
        await alice.send("do not modify")
        await until(lambda: len(bob.messages) == 1)

        assert bob.messages[0].authenticated is False
        assert bob.state == SessionState.OPEN

        await alice.close()
        await bob.close()

    async def test_garbage_frame_flagged(self, hub, passphrase, until):
        bob = ChatSession(hub.create_transport(), passphrase)
        raw = await open_raw_offerer(hub, bob)
        await until(lambda: raw.is_open)

        await raw.send(b"this is not a frame")
        await until(lambda: len(bob.messages) == 1)

        assert bob.messages[0].text == "this is not a frame"
        assert bob.messages[0].authenticated is False

        await raw.close()
        await bob.close()

    async def test_deeply_nested_frame_flagged(self, hub, passphrase, until):
        bob = ChatSession(hub.create_transport(), passphrase)
        warnings = []
        bob.on_warning = warnings.append
        raw = await open_raw_offerer(hub, bob)
        await until(lambda: raw.is_open)

        await raw.send(b"[" * 100000)
        await until(lambda: len(bob.messages) == 1)

        assert bob.messages[0].authenticated is False
        assert isinstance(warnings[0], ProtocolError)
        assert bob.state == SessionState.OPEN

        await raw.close()
        await bob.close()


@pytest.mark.asyncio
class TestTeardown:
    """Tests for closing and failure."""

    async def test_close_drops_key_and_blocks_send(self, hub, passphrase, connect, until):
        alice = ChatSession(hub.create_transport(), passphrase)
        bob = ChatSession(hub.create_transport(), passphrase)
        await connect(alice, bob)

        await alice.close()

        assert alice.state == SessionState.CLOSED
        assert alice.is_ready is False
        assert alice.salt_exchange.salt is None
        with pytest.raises(TransportFailure):
            await alice.send("after close")

        await until(lambda: bob.state == SessionState.CLOSED)
        assert bob.is_ready is False

        # Idempotent
        await alice.close()
        assert alice.state == SessionState.CLOSED

    async def test_close_from_idle(self, hub, passphrase):
        async with ChatSession(hub.create_transport(), passphrase) as session:
            assert session.state == SessionState.IDLE
        assert session.state == SessionState.CLOSED

    async def test_answerer_fails_if_closed_before_salt(self, hub, passphrase, until):
        bob = ChatSession(hub.create_transport(), passphrase)
        raw = await open_raw_offerer(hub, bob)
        await until(lambda: bob.state == SessionState.OPEN)

        await raw.close()
        await until(lambda: bob.state == SessionState.FAILED)

        assert "salt" in bob.fsm.get_error_message()
        assert bob.status.startswith(SessionState.FAILED.value)

    async def test_offerer_fails_if_peer_leaves_during_handshake(
        self, hub, passphrase, until
    ):
        alice = ChatSession(hub.create_transport(), passphrase)
        bob = ChatSession(hub.create_transport(), passphrase)
        answer = await bob.accept_offer(await alice.create_offer())

        await bob.close()
        with pytest.raises(TransportFailure):
            await alice.finalize(answer)
        assert alice.state == SessionState.FAILED


@pytest.mark.asyncio
async def test_session_from_config(hub, passphrase, temp_dir, monkeypatch):
    monkeypatch.setenv("DUET_SESSION_SEND_TIMEOUT", "2.5")
    config = Config(temp_dir / "config.toml")

    session = ChatSession.from_config(hub.create_transport(), passphrase, config)

    assert session.send_timeout == 2.5
    assert session.kdf.params == KdfParams()
    await session.close()
