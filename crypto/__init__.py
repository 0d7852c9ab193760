"""
Cryptographic module for end-to-end encrypted chat.

Implements the party-side encryption:
- P-256 ECDH key agreement
- PBKDF2-HMAC-SHA256 key stretching
- AES-256-GCM message envelopes
"""

from .primitives import (
    generate_ecdh_keypair,
    ecdh_exchange,
    derive_key,
    encrypt_message,
    decrypt_message,
    CryptoError,
    InvalidPeerKey,
    NotReady,
    AuthenticationFailed
)
from .envelope import EncryptedEnvelope
from .engine import CryptoEngine

__all__ = [
    'generate_ecdh_keypair',
    'ecdh_exchange',
    'derive_key',
    'encrypt_message',
    'decrypt_message',
    'CryptoError',
    'InvalidPeerKey',
    'NotReady',
    'AuthenticationFailed',
    'EncryptedEnvelope',
    'CryptoEngine'
]
