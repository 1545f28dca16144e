"""
Duet - Passphrase-encrypted peer-to-peer chat

Two peers exchange copy/paste connection descriptors, open a direct
channel, and talk over AES-256-GCM with a key derived from a shared
passphrase. No server sees plaintext or keys.

Author: duet contributors
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config
from .connection_fsm import SessionState
from .constants import APP_NAME, VERSION
from .crypto import CryptoProvider, FrameCodec, KdfParams, KeyDerivation
from .errors import (
    AuthenticationError,
    ConfigError,
    CryptoError,
    DuetError,
    ErrorCode,
    NotReadyError,
    ProtocolError,
    TransportFailure,
)
from .session import ChatSession, Message, Origin
from .tcp_transport import TcpTransport
from .transport import LoopbackHub, LoopbackTransport, PeerTransport

__all__ = [
    "APP_NAME",
    "VERSION",
    "AuthenticationError",
    "ChatSession",
    "Config",
    "ConfigError",
    "CryptoError",
    "CryptoProvider",
    "DuetError",
    "ErrorCode",
    "FrameCodec",
    "KdfParams",
    "KeyDerivation",
    "LoopbackHub",
    "LoopbackTransport",
    "Message",
    "NotReadyError",
    "Origin",
    "PeerTransport",
    "ProtocolError",
    "SessionState",
    "TcpTransport",
    "TransportFailure",
    "__license__",
    "__version__",
]
