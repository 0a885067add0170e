"""Thrift wire codec (compact and binary protocols, no schema)."""

from .codec import MAX_DEPTH, decode, decode_message, encode, encode_message
from .values import (
    I64,
    MessageHeader,
    MessageKind,
    Protocol,
    Struct,
    ThriftSet,
    TType,
    Value,
    looks_like_text,
)

__all__ = [
    "I64",
    "MAX_DEPTH",
    "MessageHeader",
    "MessageKind",
    "Protocol",
    "Struct",
    "TType",
    "ThriftSet",
    "Value",
    "decode",
    "decode_message",
    "encode",
    "encode_message",
    "looks_like_text",
]
