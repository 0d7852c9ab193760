"""
Per-party crypto engine.

One CryptoEngine backs one party in one chat session. It owns the party's
ephemeral P-256 keypair and, once the peer's public key has arrived, the
derived AES-256-GCM key. Nothing in here knows about sockets or sessions.
"""

import asyncio
from typing import Optional
from cryptography.hazmat.primitives.asymmetric import ec

from .envelope import EncryptedEnvelope
from .primitives import (
    generate_ecdh_keypair,
    ecdh_exchange,
    derive_key,
    encrypt_message,
    decrypt_message,
    serialize_public_key,
    deserialize_public_key,
    NotReady,
)


class CryptoEngine:
    """
    Key agreement and authenticated encryption for a single party.

    The public methods are coroutines; PBKDF2 and AES-GCM run in a worker
    thread so a busy party does not stall its event loop.
    """

    def __init__(self):
        self._private_key: Optional[ec.EllipticCurvePrivateKey] = None
        self._public_bytes: Optional[bytes] = None
        self._encryption_key: Optional[bytes] = None

    @property
    def public_key(self) -> Optional[bytes]:
        """Our exported public key, or None before generate_key_pair()"""
        return self._public_bytes

    def has_key_pair(self) -> bool:
        return self._private_key is not None

    async def generate_key_pair(self) -> bytes:
        """
        Generate a fresh keypair, replacing any previous key material.

        Returns:
            Uncompressed public point (65 bytes) to send to the peer
        """
        private_key, public_key = await asyncio.to_thread(generate_ecdh_keypair)
        self._private_key = private_key
        self._public_bytes = serialize_public_key(public_key)
        self._encryption_key = None
        return self._public_bytes

    async def derive_shared_key(self, peer_public_key: bytes) -> None:
        """
        Derive the session key from our private key and the peer's public key.

        Calling this again with the same peer key yields the same key.

        Raises:
            InvalidPeerKey: If peer_public_key is not a P-256 point
            NotReady: If no keypair has been generated
        """
        peer_key = deserialize_public_key(peer_public_key)
        if self._private_key is None:
            raise NotReady("Generate a key pair before deriving the shared key")

        private_key = self._private_key

        def _derive() -> bytes:
            return derive_key(ecdh_exchange(private_key, peer_key))

        self._encryption_key = await asyncio.to_thread(_derive)

    async def encrypt(self, plaintext: bytes) -> EncryptedEnvelope:
        """
        Encrypt one message under the derived key with a fresh nonce.

        Raises:
            NotReady: If the key exchange has not completed
        """
        key = self._require_key()
        ciphertext, nonce, tag = await asyncio.to_thread(encrypt_message, key, plaintext)
        return EncryptedEnvelope(ciphertext=ciphertext, nonce=nonce, auth_tag=tag)

    async def decrypt(self, envelope: EncryptedEnvelope) -> bytes:
        """
        Verify and decrypt one envelope.

        Raises:
            NotReady: If the key exchange has not completed
            AuthenticationFailed: If the envelope does not verify
        """
        key = self._require_key()
        return await asyncio.to_thread(
            decrypt_message, key, envelope.ciphertext, envelope.nonce, envelope.auth_tag
        )

    def is_ready(self) -> bool:
        """Check if encryption is ready (key established)"""
        return self._encryption_key is not None

    def reset(self):
        """Discard all key material"""
        self._private_key = None
        self._public_bytes = None
        self._encryption_key = None

    def _require_key(self) -> bytes:
        if self._encryption_key is None:
            raise NotReady("Encryption key not established. Perform key exchange first.")
        return self._encryption_key
