"""
Cryptographic Primitives for End-to-End Encryption

This module provides the foundational cryptographic operations used by the
chat parties: P-256 ECDH key agreement, PBKDF2 key stretching and AES-256-GCM
authenticated encryption. The relay server never imports it.
"""

import os
import base64
import binascii
from typing import Tuple
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


CURVE = ec.SECP256R1()
KDF_SALT = b"SecureChat-E2EE-Salt"
KDF_ITERATIONS = 100000
KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
PUBLIC_KEY_LENGTH = 65  # uncompressed X9.62 point


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class InvalidPeerKey(CryptoError):
    """Peer public key is not a valid point on the agreed curve"""
    pass


class NotReady(CryptoError):
    """Operation needs key material that has not been established"""
    pass


class AuthenticationFailed(CryptoError):
    """Tag verification failed: tampering, wrong key or corrupted transport"""
    pass


def generate_ecdh_keypair() -> Tuple[ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey]:
    """
    Generate an ephemeral P-256 keypair for key exchange.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = ec.generate_private_key(CURVE)
    return private_key, private_key.public_key()


def ecdh_exchange(private_key: ec.EllipticCurvePrivateKey, public_key: ec.EllipticCurvePublicKey) -> bytes:
    """
    Perform elliptic-curve Diffie-Hellman.

    Args:
        private_key: Our private key
        public_key: Their public key

    Returns:
        32-byte shared secret (x coordinate of the shared point)
    """
    return private_key.exchange(ec.ECDH(), public_key)


def derive_key(shared_secret: bytes) -> bytes:
    """
    Stretch a raw ECDH output into an AES-256-GCM key with PBKDF2-HMAC-SHA256.

    Args:
        shared_secret: Raw Diffie-Hellman output

    Returns:
        32-byte symmetric key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(shared_secret)


def encrypt_message(key: bytes, plaintext: bytes) -> Tuple[bytes, bytes, bytes]:
    """
    Encrypt a message using AES-256-GCM with a fresh random nonce.

    Args:
        key: 32-byte encryption key
        plaintext: Message to encrypt

    Returns:
        Tuple of (ciphertext, nonce, tag)
    """
    nonce = os.urandom(NONCE_LENGTH)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    return sealed[:-TAG_LENGTH], nonce, sealed[-TAG_LENGTH:]


def decrypt_message(key: bytes, ciphertext: bytes, nonce: bytes, tag: bytes) -> bytes:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        key: 32-byte encryption key
        ciphertext: Encrypted message without the tag
        nonce: 12-byte nonce used for encryption
        tag: 16-byte authentication tag

    Returns:
        Decrypted plaintext

    Raises:
        AuthenticationFailed: If the tag does not verify
    """
    if len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
        raise AuthenticationFailed("Malformed nonce or tag")

    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as e:
        raise AuthenticationFailed("Failed to decrypt message. Possible tampering or wrong key.") from e


def serialize_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Serialize a P-256 public key to an uncompressed point"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint
    )


def deserialize_public_key(key_bytes: bytes) -> ec.EllipticCurvePublicKey:
    """
    Deserialize and validate a P-256 public key.

    Raises:
        InvalidPeerKey: If the bytes are not a point on the curve
    """
    if len(key_bytes) != PUBLIC_KEY_LENGTH:
        raise InvalidPeerKey(f"Public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(key_bytes)}")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, key_bytes)
    except ValueError as e:
        raise InvalidPeerKey("Public key is not a valid P-256 point") from e


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """Strict standard-alphabet base64 decode"""
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Invalid base64 data") from e
