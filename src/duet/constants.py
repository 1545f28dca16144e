"""
Duet - Global Constants and Configuration Values

This module defines all constants used throughout the Duet package.
All magic numbers and configuration defaults are centralized here.

Author: duet contributors
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "Duet"

# Network Constants
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 0  # 0 lets the OS pick a free port
CONNECT_TIMEOUT = 15  # seconds
MAX_PENDING_PEERS = 8  # token-bearing connections held until the answer arrives

# Session Timeouts (seconds)
SEND_TIMEOUT = 10  # bounded wait for key/channel readiness before send
PENDING_FRAME_LIMIT = 100  # data frames held while the salt is in flight

# Message Limits
MAX_FRAME_SIZE = 256 * 1024  # 256 KB
MAX_TEXT_MESSAGE_SIZE = 64 * 1024  # 64 KB
FRAME_LENGTH_PREFIX_SIZE = 4  # bytes, big-endian

# Cryptography Constants
KEY_SIZE = 32  # 256 bits for AES-256-GCM
NONCE_SIZE = 12  # 96 bits for GCM
SALT_SIZE = 16  # 128 bits
TOKEN_SIZE = 16  # channel token carried in descriptors
KDF_PBKDF2 = "pbkdf2-sha256"
KDF_ARGON2ID = "argon2id"
PBKDF2_ITERATIONS = 120000
PBKDF2_MIN_ITERATIONS = 120000
PBKDF2_MAX_ITERATIONS = 10000000
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1
ARGON2_MAX_TIME_COST = 10
ARGON2_MAX_MEMORY_COST = 1048576  # 1 GB
ARGON2_MAX_PARALLELISM = 16

# Descriptor Types
DESCRIPTOR_OFFER = "offer"
DESCRIPTOR_ANSWER = "answer"

# File Paths
DEFAULT_DATA_DIR = "~/.duet"
CONFIG_FILENAME = "config.toml"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# State Machine
STATE_HISTORY_LIMIT = 100

# Protocol Version
PROTOCOL_VERSION = 1
