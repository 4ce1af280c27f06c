"""
Binary Message Codec

This module turns requests and responses into frames and back.

Frame layout (all integers big-endian):

    frame  := header:1 ( RSEP:1 length:4 data:length )* EOM:1

    header  opcode for requests, status for responses
    RSEP    0x80, marks the start of a record
    EOM     0x00, ends the message

The explicit end marker makes every strict prefix of a frame invalid, so a
truncated message can never be mistaken for a shorter one.
"""

import asyncio
import struct
from typing import Callable, List, NamedTuple, Sequence, Tuple

from ..config.settings import settings
from ..errors import FramingError, ProtocolError
from .messages import MessageType, Request, Response, ResponseStatus

RSEP = 0x80
EOM = 0x00

_LENGTH = struct.Struct(">I")


class Frame(NamedTuple):
    """A decoded frame: the header byte and its records."""
    header: int
    records: Tuple[bytes, ...]


class MessageCodec:
    """
    Encoder/decoder for the KV-Cache binary protocol.

    The codec holds no per-message state and can be shared between threads.

    Attributes:
        max_record_size: Largest record accepted in either direction
    """

    def __init__(self, max_record_size: int = None):
        """Initialize the codec with the record size limit from settings."""
        self.max_record_size = (
            max_record_size if max_record_size is not None else settings.MAX_RECORD_SIZE
        )

    def encode(self, header: int, records: Sequence[bytes] = ()) -> bytes:
        """
        Encode a header byte and records into a frame.

        Args:
            header: Opcode or status, 0-255
            records: Byte strings, possibly empty

        Returns:
            The framed bytes

        Raises:
            FramingError: header out of range or a record above max_record_size
        """
        if not 0 <= header <= 0xFF:
            raise FramingError(f"header does not fit in one byte: {header}")

        parts = [bytes((header,))]
        for record in records:
            if len(record) > self.max_record_size:
                raise FramingError(
                    f"record of {len(record)} bytes exceeds the {self.max_record_size} byte limit"
                )
            parts.append(bytes((RSEP,)))
            parts.append(_LENGTH.pack(len(record)))
            parts.append(bytes(record))
        parts.append(bytes((EOM,)))
        return b"".join(parts)

    def decode(self, data: bytes) -> Frame:
        """
        Decode exactly one frame.

        Raises:
            FramingError: Empty, truncated or malformed input, or trailing
                bytes after the end marker
        """
        data = bytes(data)
        size = len(data)
        if size == 0:
            raise FramingError("empty frame")

        header = data[0]
        records: List[bytes] = []
        pos = 1
        while True:
            if pos >= size:
                raise FramingError("truncated frame: missing end-of-message marker")

            marker = data[pos]
            pos += 1
            if marker == EOM:
                break
            if marker != RSEP:
                raise FramingError(f"unexpected byte 0x{marker:02x} at offset {pos - 1}")

            if pos + _LENGTH.size > size:
                raise FramingError("truncated frame: incomplete record length")
            (length,) = _LENGTH.unpack_from(data, pos)
            pos += _LENGTH.size
            self._check_length(length)

            end = pos + length
            if end > size:
                raise FramingError(
                    f"truncated frame: record needs {length} bytes, {size - pos} available"
                )
            records.append(data[pos:end])
            pos = end

        if pos != size:
            raise FramingError(f"{size - pos} trailing byte(s) after end-of-message marker")
        return Frame(header, tuple(records))

    def read_frame(self, read: Callable[[int], bytes]) -> bytes:
        """
        Pull one complete frame from a blocking stream.

        Args:
            read: Callable returning exactly n bytes, or fewer at end of stream

        Returns:
            The raw frame bytes, ready for decode()

        Raises:
            FramingError: The stream ended mid-frame or carries garbage
        """
        def take(n: int) -> bytes:
            chunk = read(n)
            if len(chunk) != n:
                raise FramingError(f"stream closed mid-frame: wanted {n} bytes, got {len(chunk)}")
            return chunk

        parts = [take(1)]
        while True:
            marker = take(1)
            parts.append(marker)
            if marker[0] == EOM:
                return b"".join(parts)
            if marker[0] != RSEP:
                raise FramingError(f"unexpected byte 0x{marker[0]:02x} in stream")

            prefix = take(_LENGTH.size)
            (length,) = _LENGTH.unpack(prefix)
            self._check_length(length)
            parts.append(prefix)
            parts.append(take(length))

    async def read_frame_async(self, reader: asyncio.StreamReader) -> bytes:
        """
        Pull one complete frame from an asyncio stream.

        Raises:
            FramingError: The stream ended mid-frame or carries garbage
        """
        async def take(n: int) -> bytes:
            try:
                return await reader.readexactly(n)
            except asyncio.IncompleteReadError as e:
                raise FramingError(
                    f"stream closed mid-frame: wanted {n} bytes, got {len(e.partial)}"
                ) from e

        parts = [await take(1)]
        while True:
            marker = await take(1)
            parts.append(marker)
            if marker[0] == EOM:
                return b"".join(parts)
            if marker[0] != RSEP:
                raise FramingError(f"unexpected byte 0x{marker[0]:02x} in stream")

            prefix = await take(_LENGTH.size)
            (length,) = _LENGTH.unpack(prefix)
            self._check_length(length)
            parts.append(prefix)
            parts.append(await take(length))

    def encode_request(self, request: Request) -> bytes:
        return self.encode(request.type, request.records)

    def decode_request(self, data: bytes) -> Request:
        """
        Decode a request frame.

        Raises:
            FramingError: Bad framing
            ProtocolError: Unknown opcode
        """
        frame = self.decode(data)
        try:
            message_type = MessageType(frame.header)
        except ValueError:
            raise ProtocolError(f"unknown opcode 0x{frame.header:02x}") from None
        return Request(message_type, frame.records)

    def encode_response(self, response: Response) -> bytes:
        return self.encode(response.status, response.records)

    def decode_response(self, data: bytes) -> Response:
        """
        Decode a response frame.

        Raises:
            FramingError: Bad framing
            ProtocolError: Unknown status byte
        """
        frame = self.decode(data)
        try:
            status = ResponseStatus(frame.header)
        except ValueError:
            raise ProtocolError(f"unknown response status 0x{frame.header:02x}") from None
        return Response(status, frame.records)

    def _check_length(self, length: int) -> None:
        if length > self.max_record_size:
            raise FramingError(
                f"record length {length} exceeds the {self.max_record_size} byte limit"
            )
