"""
Wire representation of one encrypted chat message.
"""

from typing import Dict
from dataclasses import dataclass

from .primitives import b64encode, b64decode


@dataclass(frozen=True)
class EncryptedEnvelope:
    """
    AES-GCM output for a single message.

    Attributes:
        ciphertext: Encrypted message bytes (same length as the plaintext)
        nonce: 96-bit nonce, never reused under one key
        auth_tag: 128-bit authentication tag
    """
    ciphertext: bytes
    nonce: bytes
    auth_tag: bytes

    def to_dict(self) -> Dict[str, str]:
        """Convert to dictionary for serialization"""
        return {
            'ciphertext': b64encode(self.ciphertext),
            'nonce': b64encode(self.nonce),
            'auth_tag': b64encode(self.auth_tag)
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'EncryptedEnvelope':
        """Create from dictionary"""
        return cls(
            ciphertext=b64decode(data['ciphertext']),
            nonce=b64decode(data['nonce']),
            auth_tag=b64decode(data['auth_tag'])
        )
