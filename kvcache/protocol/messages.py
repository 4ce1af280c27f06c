"""
Protocol Message Definitions

This module defines the opcodes, response statuses and the immutable
request/response values exchanged with cache nodes.
"""

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterable, Mapping, Tuple, Union

from ..errors import ConfigurationError, ProtocolError, RecordIndexError

Key = Union[str, bytes]

# One-byte acknowledgement carried in record 0 of write responses
ACK_SUCCESS = b"\x00"
ACK_REJECTED = b"\x01"

# One-byte answers to EXISTS
PRESENT = b"\x01"
ABSENT = b"\x00"

_UINT32 = struct.Struct(">I")


class MessageType(IntEnum):
    """Request opcodes (first byte of a request frame)."""
    GET = 0x01
    SET = 0x02
    DELETE = 0x03
    EVICT = 0x04
    GET_RANGE = 0x06
    ADD = 0x07
    EXISTS = 0x08
    TOUCH = 0x09
    MIGRATION_ABORT = 0x21
    MIGRATION_BEGIN = 0x22
    CHECK = 0x31
    STATS = 0x32
    GET_INDEX = 0x41


class ResponseStatus(IntEnum):
    """Response statuses (first byte of a response frame)."""
    OK = 0x01
    MISS = 0x02
    ERROR = 0x03


def to_bytes(key: Key) -> bytes:
    """Encode a str key as UTF-8; pass bytes through."""
    if isinstance(key, str):
        return key.encode('utf-8')
    return bytes(key)


def pack_uint32(value: int) -> bytes:
    """
    Pack an unsigned 32-bit integer big-endian (expiry, offsets, lengths).

    Raises:
        ConfigurationError: value is negative or does not fit in 32 bits
    """
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 0xFFFFFFFF:
        raise ConfigurationError(f"value out of 32-bit range: {value!r}")
    return _UINT32.pack(value)


def unpack_uint32(data: bytes) -> int:
    """Inverse of pack_uint32."""
    if len(data) != 4:
        raise ProtocolError(f"expected a 4-byte integer record, got {len(data)} bytes")
    return _UINT32.unpack(data)[0]


def _freeze(records: Iterable[bytes]) -> Tuple[bytes, ...]:
    return tuple(bytes(record) for record in records)


@dataclass(frozen=True)
class Request:
    """
    A request to a cache node.

    Attributes:
        type: The opcode
        records: Ordered byte-string arguments (key first for keyed operations)
    """
    type: MessageType
    records: Tuple[bytes, ...] = field(default_factory=tuple)

    def __post_init__(self):
        """Normalize records into an immutable tuple of bytes."""
        object.__setattr__(self, "records", _freeze(self.records))

    @classmethod
    def get(cls, key: Key) -> "Request":
        """Create a GET request."""
        return cls(MessageType.GET, (to_bytes(key),))

    @classmethod
    def set(cls, key: Key, value: bytes, expire: int = 0) -> "Request":
        """Create a SET request; expire (seconds) travels as a third record when non-zero."""
        records = [to_bytes(key), bytes(value)]
        if expire:
            records.append(pack_uint32(expire))
        return cls(MessageType.SET, records)

    @classmethod
    def add(cls, key: Key, value: bytes, expire: int = 0) -> "Request":
        """Create an ADD request (store only if the key is absent)."""
        records = [to_bytes(key), bytes(value)]
        if expire:
            records.append(pack_uint32(expire))
        return cls(MessageType.ADD, records)

    @classmethod
    def delete(cls, key: Key) -> "Request":
        return cls(MessageType.DELETE, (to_bytes(key),))

    @classmethod
    def evict(cls, key: Key) -> "Request":
        return cls(MessageType.EVICT, (to_bytes(key),))

    @classmethod
    def exists(cls, key: Key) -> "Request":
        return cls(MessageType.EXISTS, (to_bytes(key),))

    @classmethod
    def touch(cls, key: Key, expire: int = 0) -> "Request":
        records = [to_bytes(key)]
        if expire:
            records.append(pack_uint32(expire))
        return cls(MessageType.TOUCH, records)

    @classmethod
    def get_range(cls, key: Key, offset: int, length: int) -> "Request":
        """Create a GET_RANGE request for ``length`` bytes starting at ``offset``."""
        return cls(MessageType.GET_RANGE, (to_bytes(key), pack_uint32(offset), pack_uint32(length)))

    @classmethod
    def stats(cls) -> "Request":
        return cls(MessageType.STATS)

    @classmethod
    def check(cls) -> "Request":
        return cls(MessageType.CHECK)

    @classmethod
    def index(cls) -> "Request":
        """Create a request for the key index of a node."""
        return cls(MessageType.GET_INDEX)

    @classmethod
    def migration_begin(cls, descriptor: str) -> "Request":
        """Create a MIGRATION_BEGIN request announcing the target node descriptor."""
        return cls(MessageType.MIGRATION_BEGIN, (descriptor.encode('utf-8'),))

    @classmethod
    def migration_abort(cls) -> "Request":
        return cls(MessageType.MIGRATION_ABORT)

    @property
    def key(self) -> bytes:
        """The key record (record 0), or b'' for keyless requests."""
        return self.records[0] if self.records else b""


@dataclass(frozen=True)
class Response:
    """
    A response from a cache node.

    Attributes:
        status: OK, MISS or ERROR
        records: Ordered byte-string payload; record 0 is the primary result
    """
    status: ResponseStatus
    records: Tuple[bytes, ...] = field(default_factory=tuple)

    def __post_init__(self):
        """Normalize records into an immutable tuple of bytes."""
        object.__setattr__(self, "records", _freeze(self.records))

    @classmethod
    def ok(cls, *records: bytes) -> "Response":
        """Create a successful response."""
        return cls(ResponseStatus.OK, records)

    @classmethod
    def miss(cls) -> "Response":
        """Create a 'key not found' response."""
        return cls(ResponseStatus.MISS)

    @classmethod
    def error(cls, message: str) -> "Response":
        """Create an error response carrying a UTF-8 message."""
        return cls(ResponseStatus.ERROR, (message.encode('utf-8'),))

    @classmethod
    def stored(cls) -> "Response":
        """Create an acknowledged-write response."""
        return cls.ok(ACK_SUCCESS)

    @classmethod
    def rejected(cls) -> "Response":
        """Create a refused-write response."""
        return cls.ok(ACK_REJECTED)

    @classmethod
    def exists_response(cls, exists: bool) -> "Response":
        """Create an EXISTS response."""
        return cls.ok(PRESENT if exists else ABSENT)

    @classmethod
    def index_response(cls, entries: Mapping[bytes, int]) -> "Response":
        """Create a GET_INDEX response: key and 4-byte value size for each entry."""
        records = []
        for key, size in entries.items():
            records += [bytes(key), pack_uint32(size)]
        return cls(ResponseStatus.OK, records)

    @property
    def is_ok(self) -> bool:
        return self.status == ResponseStatus.OK

    def record(self, index: int) -> bytes:
        """
        Return the record at ``index``.

        Raises:
            RecordIndexError: index is negative or past the last record
        """
        if not 0 <= index < len(self.records):
            raise RecordIndexError(
                f"record index {index} out of range for {self.status.name} "
                f"response with {len(self.records)} record(s)"
            )
        return self.records[index]

    @property
    def message(self) -> str:
        """Record 0 decoded as text, for ERROR responses."""
        if not self.records:
            return ""
        return self.records[0].decode('utf-8', errors='replace')
