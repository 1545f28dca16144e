"""
Duet - Cryptographic operations.

Created by duet contributors

This module implements the two cryptographic building blocks of a session:
- KeyDerivation: passphrase + 16-byte salt -> 256-bit session key
  (PBKDF2-HMAC-SHA256 with 120,000 iterations, or Argon2id)
- FrameCodec: AES-256-GCM sealing of individual messages, each under a
  fresh random 96-bit nonce

Both take an injected CryptoProvider instead of reaching for ambient
randomness, so tests can substitute a deterministic random source.

All cryptographic operations use well-tested, open-source libraries:
- cryptography library (Apache 2.0/BSD License)
- argon2-cffi (MIT License)
"""

import os
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from argon2.exceptions import HashingError
from argon2.low_level import hash_secret_raw, Type

from .constants import (
    ARGON2_MAX_MEMORY_COST,
    ARGON2_MAX_PARALLELISM,
    ARGON2_MAX_TIME_COST,
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    KDF_ARGON2ID,
    KDF_PBKDF2,
    KEY_SIZE,
    NONCE_SIZE,
    PBKDF2_ITERATIONS,
    PBKDF2_MAX_ITERATIONS,
    PBKDF2_MIN_ITERATIONS,
    SALT_SIZE,
)
from .errors import AuthenticationError, CryptoError, ErrorCode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KdfParams:
    """
    Key derivation parameters.

    Both peers must agree on these; the offerer publishes them in its offer
    descriptor and the answerer adopts them.
    """

    name: str = KDF_PBKDF2
    iterations: int = PBKDF2_ITERATIONS
    time_cost: int = ARGON2_TIME_COST
    memory_cost: int = ARGON2_MEMORY_COST
    parallelism: int = ARGON2_PARALLELISM

    def validate(self) -> None:
        """
        Reject parameters too weak to slow down offline guessing.

        Raises:
            CryptoError: If the KDF is unknown, a parameter is not an
                integer, or its work factor is outside the accepted range
        """
        for value in (self.iterations, self.time_cost, self.memory_cost, self.parallelism):
            if not isinstance(value, int) or isinstance(value, bool):
                raise CryptoError(
                    ErrorCode.E108_KEY_DERIVATION_FAILED,
                    f"KDF parameters must be integers, got {value!r}",
                )

        if self.name == KDF_PBKDF2:
            if not PBKDF2_MIN_ITERATIONS <= self.iterations <= PBKDF2_MAX_ITERATIONS:
                raise CryptoError(
                    ErrorCode.E108_KEY_DERIVATION_FAILED,
                    f"PBKDF2 iterations out of range: {self.iterations}",
                    {
                        "iterations": self.iterations,
                        "minimum": PBKDF2_MIN_ITERATIONS,
                        "maximum": PBKDF2_MAX_ITERATIONS,
                    },
                )
        elif self.name == KDF_ARGON2ID:
            if (
                not 1 <= self.time_cost <= ARGON2_MAX_TIME_COST
                or not 1 <= self.parallelism <= ARGON2_MAX_PARALLELISM
                or not 8 * self.parallelism <= self.memory_cost <= ARGON2_MAX_MEMORY_COST
            ):
                raise CryptoError(
                    ErrorCode.E108_KEY_DERIVATION_FAILED,
                    "Argon2id parameters out of range",
                    self.to_dict(),
                )
        else:
            raise CryptoError(
                ErrorCode.E108_KEY_DERIVATION_FAILED,
                f"Unknown key derivation function: {self.name}",
                {"kdf": self.name},
            )

    def to_dict(self) -> Dict[str, Any]:
        """Export the parameters relevant to the selected KDF."""
        if self.name == KDF_ARGON2ID:
            return {
                "name": self.name,
                "time_cost": self.time_cost,
                "memory_cost": self.memory_cost,
                "parallelism": self.parallelism,
            }
        return {"name": self.name, "iterations": self.iterations}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "KdfParams":
        """
        Import parameters from a descriptor.

        Raises:
            CryptoError: If the data is malformed or too weak
        """
        try:
            name = data["name"]
            if name == KDF_ARGON2ID:
                params = KdfParams(
                    name=name,
                    time_cost=int(data["time_cost"]),
                    memory_cost=int(data["memory_cost"]),
                    parallelism=int(data["parallelism"]),
                )
            else:
                params = KdfParams(name=name, iterations=int(data["iterations"]))
        except (KeyError, TypeError, ValueError) as e:
            raise CryptoError(
                ErrorCode.E108_KEY_DERIVATION_FAILED, f"Malformed KDF parameters: {e}"
            ) from e
        params.validate()
        return params


class CryptoProvider:
    """
    Source of randomness, AEAD and KDF primitives.

    Args:
        random_source: Callable returning n random bytes (default: os.urandom)
    """

    def __init__(self, random_source: Optional[Callable[[int], bytes]] = None):
        self._random_source = random_source or os.urandom

    def random_bytes(self, length: int) -> bytes:
        data = self._random_source(length)
        if len(data) != length:
            raise CryptoError(
                ErrorCode.E100_CRYPTO_ERROR,
                f"Random source returned {len(data)} bytes, expected {length}",
            )
        return data

    def aead_encrypt(self, key: bytes, nonce: bytes, plaintext: bytes) -> bytes:
        """Encrypt with AES-256-GCM; returns ciphertext with the 16-byte tag appended."""
        return AESGCM(key).encrypt(nonce, plaintext, None)

    def aead_decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
        """
        Decrypt and verify with AES-256-GCM.

        Raises:
            AuthenticationError: If the tag does not verify
        """
        try:
            return AESGCM(key).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise AuthenticationError(
                details={"ciphertext_length": len(ciphertext)}
            ) from e

    def kdf(self, params: KdfParams, passphrase: bytes, salt: bytes) -> bytes:
        """Run the selected KDF and return KEY_SIZE bytes."""
        if params.name == KDF_ARGON2ID:
            try:
                return hash_secret_raw(
                    secret=passphrase,
                    salt=salt,
                    time_cost=params.time_cost,
                    memory_cost=params.memory_cost,
                    parallelism=params.parallelism,
                    hash_len=KEY_SIZE,
                    type=Type.ID,
                )
            except HashingError as e:
                raise CryptoError(
                    ErrorCode.E108_KEY_DERIVATION_FAILED, f"Argon2id failed: {e}"
                ) from e
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=params.iterations,
        )
        return kdf.derive(passphrase)


class KeyDerivation:
    """
    Derives the session key from the shared passphrase and the session salt.

    Deterministic: identical (passphrase, salt, params) always produce a
    bit-identical key on both peers. No I/O.
    """

    def __init__(self, params: Optional[KdfParams] = None, provider: Optional[CryptoProvider] = None):
        self.params = params or KdfParams()
        self.params.validate()
        self.provider = provider or CryptoProvider()

    def derive(self, passphrase: bytes, salt: bytes) -> bytes:
        """
        Derive a 256-bit key.

        Args:
            passphrase: UTF-8 encoded passphrase
            salt: 16-byte session salt

        Returns:
            32-byte key

        Raises:
            CryptoError: If the salt has the wrong length
        """
        if len(salt) != SALT_SIZE:
            raise CryptoError(
                ErrorCode.E103_INVALID_KEY,
                f"Salt must be {SALT_SIZE} bytes, got {len(salt)}",
                {"salt_length": len(salt)},
            )
        key = self.provider.kdf(self.params, passphrase, salt)
        logger.debug(f"Session key derived with {self.params.name}")
        return key

    def derive_from_text(self, passphrase: str, salt: bytes) -> bytes:
        return self.derive(passphrase.encode("utf-8"), salt)


class FrameCodec:
    """
    Authenticated encryption of individual messages.

    Every message is sealed independently under a fresh random nonce, so a
    lost or reordered frame never desynchronizes the peers.
    """

    def __init__(self, provider: Optional[CryptoProvider] = None):
        self.provider = provider or CryptoProvider()

    @staticmethod
    def _check_key(key: bytes) -> None:
        if len(key) != KEY_SIZE:
            raise CryptoError(
                ErrorCode.E103_INVALID_KEY,
                f"Key must be {KEY_SIZE} bytes, got {len(key)}",
            )

    def seal(self, key: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
        """
        Encrypt plaintext under key.

        Returns:
            (nonce, ciphertext) where ciphertext carries the GCM tag
        """
        self._check_key(key)
        nonce = self.provider.random_bytes(NONCE_SIZE)
        return nonce, self.provider.aead_encrypt(key, nonce, plaintext)

    def open(self, key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
        """
        Decrypt and verify a sealed message.

        Raises:
            AuthenticationError: Wrong key, corrupted or truncated data,
                or malformed nonce
        """
        self._check_key(key)
        if len(nonce) != NONCE_SIZE:
            raise AuthenticationError(
                message=f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}",
                details={"nonce_length": len(nonce)},
            )
        return self.provider.aead_decrypt(key, nonce, ciphertext)

    def seal_text(self, key: bytes, text: str) -> Tuple[bytes, bytes]:
        return self.seal(key, text.encode("utf-8"))

    def open_text(self, key: bytes, nonce: bytes, ciphertext: bytes) -> str:
        """Open a sealed message and decode it as UTF-8."""
        plaintext = self.open(key, nonce, ciphertext)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AuthenticationError(message="Decrypted payload is not valid UTF-8") from e
