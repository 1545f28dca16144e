"""
Duet - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the Duet package. Each error has a unique code for logging and debugging.

Author: duet contributors
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all Duet error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_ENCRYPTION_FAILED = "E101"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E108_KEY_DERIVATION_FAILED = "E108"

    # Transport / Protocol Errors (E200-E299)
    E200_NETWORK_ERROR = "E200"
    E201_CONNECTION_FAILED = "E201"
    E202_CONNECTION_TIMEOUT = "E202"
    E203_CONNECTION_CLOSED = "E203"
    E204_SEND_FAILED = "E204"
    E206_INVALID_MESSAGE = "E206"
    E207_MESSAGE_TOO_LARGE = "E207"
    E209_HANDSHAKE_FAILED = "E209"
    E210_INVALID_STATE = "E210"
    E211_NOT_READY = "E211"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E703_INVALID_CONFIG = "E703"
    E704_CONFIG_PARSE_ERROR = "E704"


class DuetError(Exception):
    """Base exception class for all Duet errors.

    All custom exceptions in Duet inherit from this class.
    Provides standardized error handling and logging.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize a Duet error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(DuetError):
    """Exception raised for cryptographic operation failures.

    This includes key derivation, encryption and malformed key material.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class AuthenticationError(CryptoError):
    """Raised when an AEAD tag does not verify.

    A wrong or mismatched passphrase, corrupted data and truncated
    ciphertext all end up here.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E102_DECRYPTION_FAILED,
        message: str = "Authentication tag verification failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ProtocolError(DuetError):
    """Exception raised for malformed descriptors or frames.

    Also raised when an operation is invoked in a state that does not
    allow it. The session stays in its prior state.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E206_INVALID_MESSAGE,
        message: str = "Protocol violation",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class NotReadyError(DuetError):
    """Send attempted before key and channel became ready within the wait bound."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E211_NOT_READY,
        message: str = "Session is not ready to send",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class TransportFailure(DuetError):
    """Connectivity lost or never established.

    Fatal to the session; the handshake must be restarted from a new session.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E201_CONNECTION_FAILED,
        message: str = "Transport failure",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(DuetError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
