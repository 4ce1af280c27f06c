"""Protocol module for the KV-Cache client."""

from .codec import EOM, RSEP, Frame, MessageCodec
from .messages import (
    ACK_REJECTED,
    ACK_SUCCESS,
    MessageType,
    Request,
    Response,
    ResponseStatus,
)

__all__ = [
    "ACK_REJECTED",
    "ACK_SUCCESS",
    "EOM",
    "RSEP",
    "Frame",
    "MessageCodec",
    "MessageType",
    "Request",
    "Response",
    "ResponseStatus",
]
