"""
Text wire format shared by every peer:

    TYPE|key1=value1|key2=value2|payload

Header values and the payload are percent-escaped, every byte outside
[A-Za-z0-9-_.~] becomes %XX (uppercase hex) of its UTF-8 encoding.
An empty payload is left out entirely.
"""
import secrets
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping
from urllib.parse import quote, unquote

from lanchat.constants import Constants
from lanchat.errors import DataDecodingError

TYPE_CHAT = "CHAT"
TYPE_HELLO = "HELLO"
TYPE_MBLOCK = "MBLOCK"
TYPE_MUNBLOCK = "MUNBLOCK"

MODERATION_TYPES = (TYPE_MBLOCK, TYPE_MUNBLOCK)

HEADER_ID = "id"
HEADER_TS = "ts"
HEADER_NICK = "nick"
HEADER_GROUP = "grp"
HEADER_HOST = "host"
HEADER_TARGET = "target"

FIELD_SEPARATOR = "|"
HEADER_SEPARATOR = "="


@dataclass(frozen=True)
class Message:
    type: str
    headers: Mapping[str, str] = field(default_factory=dict)
    payload: str = ""

    def __post_init__(self):
        # Read-only copy, the caller keeps no handle on it.
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers or {})))

    def header(self, key: str, default: str | None = None) -> str | None:
        return self.headers.get(key, default)


def escape(value: str | None) -> str:
    if value is None:
        return ""
    return quote(value, safe="", encoding=Constants.ENCODING)


def unescape(value: str) -> str:
    # errors="strict" so that %XX sequences which are not valid UTF-8 fail the decode.
    return unquote(value, encoding=Constants.ENCODING, errors="strict")


def next_message_id() -> str:
    """
    Returns a new dedup id: hex epoch milliseconds, a dash, then 32 random bits in hex.
    :return:
    """
    return f"{now_ms():x}-{secrets.randbits(32):x}"


def now_ms() -> int:
    return int(time.time() * 1000)


def encode(type: str, headers: dict[str, str] | None = None, payload: str | None = None) -> bytes:
    """
    Encodes a message into the bytes that are sent over UDP.
    :param type: Message type tag, eg: "CHAT".
    :param headers: Metadata, values are escaped, keys are written as-is.
    :param payload: Main content, omitted if empty.
    :return:
    """
    if not type or FIELD_SEPARATOR in type:
        raise ValueError(f"Invalid message type {type!r}.")

    fields = [type]
    if headers:
        for key, value in headers.items():
            if not key or FIELD_SEPARATOR in key or HEADER_SEPARATOR in key:
                raise ValueError(f"Invalid header key {key!r}.")
            fields.append(f"{key}{HEADER_SEPARATOR}{escape(value)}")
    if payload:
        fields.append(escape(payload))

    return FIELD_SEPARATOR.join(fields).encode(Constants.ENCODING)


def decode(data: bytes) -> Message:
    """
    Decodes received bytes into a Message, raising DataDecodingError for anything malformed -
    a partial message is never returned.
    :param data:
    :return:
    """
    if not data:
        raise DataDecodingError("Empty datagram.")

    try:
        text = data.decode(Constants.ENCODING)
        parts = text.split(FIELD_SEPARATOR)
        message_type = parts[0]
        if not message_type:
            raise DataDecodingError("Missing message type.")

        headers: dict[str, str] = {}
        payload = ""
        for part in parts[1:]:
            separator_index = part.find(HEADER_SEPARATOR)
            if separator_index > 0:
                headers[part[:separator_index]] = unescape(part[separator_index + 1:])
            else:
                payload = unescape(part)

    except DataDecodingError:
        raise
    except Exception as error:
        raise DataDecodingError("Error decoding message.") from error

    return Message(type=message_type, headers=headers, payload=payload)
