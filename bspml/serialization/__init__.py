from .message import ANY_SOURCE, ANY_TAG, Message, MessageKind
from .codec import (
    decode_checkpoint_envelope,
    decode_matrix,
    decode_message,
    decode_value,
    decode_vector,
    encode_checkpoint_envelope,
    encode_matrix,
    encode_message,
    encode_value,
    encode_vector,
)

__all__ = [
    "ANY_SOURCE",
    "ANY_TAG",
    "Message",
    "MessageKind",
    "encode_message",
    "decode_message",
    "encode_matrix",
    "decode_matrix",
    "encode_vector",
    "decode_vector",
    "encode_value",
    "decode_value",
    "encode_checkpoint_envelope",
    "decode_checkpoint_envelope",
]
