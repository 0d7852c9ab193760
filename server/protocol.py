"""
WebSocket event schemas.

Every frame is a JSON object tagged by ``type``. Inbound frames are validated
here before the handler dispatches on them; outbound frames are built from
the models below so both directions share one definition.

Binary values (public keys, ciphertext, nonce, tag) travel as standard
base64 strings. The relay checks only that they are well-formed base64 of a
sane size; it never interprets them.
"""

import base64
import binascii
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from .errors import InvalidEvent


MAX_PUBLIC_KEY_B64 = 1024
MAX_CIPHERTEXT_B64 = 128 * 1024
MAX_NONCE_B64 = 64
MAX_TAG_B64 = 64


def _check_base64(value: str) -> str:
    try:
        base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("not valid base64")
    return value


# Client -> relay

class CreateSession(BaseModel):
    type: Literal["create_session"]


class JoinSession(BaseModel):
    type: Literal["join_session"]
    session_id: str = Field(max_length=128)


class KeyExchange(BaseModel):
    type: Literal["key_exchange"]
    public_key: str = Field(min_length=1, max_length=MAX_PUBLIC_KEY_B64)

    @field_validator("public_key")
    @classmethod
    def check_public_key(cls, value: str) -> str:
        return _check_base64(value)


class EnvelopeFields(BaseModel):
    ciphertext: str = Field(max_length=MAX_CIPHERTEXT_B64)
    nonce: str = Field(min_length=1, max_length=MAX_NONCE_B64)
    auth_tag: str = Field(min_length=1, max_length=MAX_TAG_B64)

    @field_validator("ciphertext", "nonce", "auth_tag")
    @classmethod
    def check_envelope_field(cls, value: str) -> str:
        return _check_base64(value)

    def envelope(self) -> dict:
        return {"ciphertext": self.ciphertext, "nonce": self.nonce, "auth_tag": self.auth_tag}


class EncryptedMessage(EnvelopeFields):
    type: Literal["message"]


class Typing(BaseModel):
    type: Literal["typing"]
    is_typing: bool


class Ping(BaseModel):
    type: Literal["ping"]


ClientEvent = Annotated[
    Union[CreateSession, JoinSession, KeyExchange, EncryptedMessage, Typing, Ping],
    Field(discriminator="type"),
]

_client_event_adapter = TypeAdapter(ClientEvent)


def parse_client_event(data) -> ClientEvent:
    """
    Validate one inbound frame.

    Raises:
        InvalidEvent: Unknown type or malformed payload
    """
    try:
        return _client_event_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidEvent() from e


# Relay -> client

class SessionCreated(BaseModel):
    type: Literal["session_created"] = "session_created"
    session_id: str
    peer_id: str
    role: str
    link: Optional[str] = None


class SessionJoined(BaseModel):
    type: Literal["session_joined"] = "session_joined"
    session_id: str
    peer_id: str
    role: str
    link: Optional[str] = None


class PeerJoined(BaseModel):
    type: Literal["peer_joined"] = "peer_joined"
    peer_id: str


class PeerLeft(BaseModel):
    type: Literal["peer_left"] = "peer_left"
    peer_id: str


class ForwardedKey(BaseModel):
    type: Literal["key_exchange"] = "key_exchange"
    public_key: str


class ForwardedMessage(EnvelopeFields):
    type: Literal["message"] = "message"
    relay_timestamp: str


class PeerTyping(BaseModel):
    type: Literal["peer_typing"] = "peer_typing"
    peer_id: Optional[str] = None
    is_typing: bool


class Pong(BaseModel):
    type: Literal["pong"] = "pong"
