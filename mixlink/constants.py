"""
mixlink protocol constants.

Sizes are fixed by the handshake pattern and the primitives it uses, so every
handshake message has a known length and can be read with a single exact read.
"""

from __future__ import annotations

# =============================================================================
# Noise parameters
# =============================================================================

NOISE_PROTOCOL_NAME = b"Noise_XXhfs_25519+MLKEM1024_ChaChaPoly_BLAKE2b"
CLASSIC_PROTOCOL_NAME = b"Noise_XX_25519_ChaChaPoly_BLAKE2b"

# Revision byte. Revision 0 was the classical-only XX link layer.
PROLOGUE = b"\x01"
CLASSIC_PROLOGUE = b"\x00"
PROLOGUE_SIZE = 1

# =============================================================================
# Primitive sizes
# =============================================================================

PUBLIC_KEY_SIZE = 32  # X25519
PRIVATE_KEY_SIZE = 32
KEM_PUBLIC_KEY_SIZE = 1568  # ML-KEM-1024 encapsulation key
KEM_CIPHERTEXT_SIZE = 1568
KEM_SHARED_SECRET_SIZE = 32
KEY_SIZE = 32  # ChaCha20-Poly1305
MAC_SIZE = 16  # Poly1305 tag
HASH_SIZE = 64  # BLAKE2b-512

# =============================================================================
# Authentication payload
# =============================================================================

MAX_ADDITIONAL_DATA_SIZE = 255
UNIX_TIME_SIZE = 8
AUTH_MESSAGE_SIZE = 1 + MAX_ADDITIONAL_DATA_SIZE + UNIX_TIME_SIZE

# =============================================================================
# Handshake message sizes
# =============================================================================

# -> (prologue), e, e1
HANDSHAKE_MESSAGE1_SIZE = PROLOGUE_SIZE + PUBLIC_KEY_SIZE + KEM_PUBLIC_KEY_SIZE
# <- e, ee, ekem1, s, es, (auth)
HANDSHAKE_MESSAGE2_SIZE = (
    PUBLIC_KEY_SIZE
    + KEM_CIPHERTEXT_SIZE
    + MAC_SIZE
    + PUBLIC_KEY_SIZE
    + MAC_SIZE
    + AUTH_MESSAGE_SIZE
    + MAC_SIZE
)
# -> s, se, (auth)
HANDSHAKE_MESSAGE3_SIZE = PUBLIC_KEY_SIZE + MAC_SIZE + AUTH_MESSAGE_SIZE + MAC_SIZE

# =============================================================================
# Transport framing
# =============================================================================

FRAME_LENGTH_SIZE = 4  # BE32, covers the sealed body
MIN_FRAME_LENGTH = MAC_SIZE
MAX_FRAME_LENGTH_LIMIT = 2**32 - 1
DEFAULT_MAX_FRAME_LENGTH = 1_048_576

# Nonce 2^64 - 1 is reserved for REKEY and never seals a frame.
MAX_NONCE = 2**64 - 1
