"""
Tests for protocol message values

These tests verify Request and Response:
- Factory methods build the right records
- Values are immutable
- Positional record access

Run with: python -m pytest tests/test_messages.py -v
"""

import dataclasses

import pytest

from kvcache.errors import ConfigurationError, ProtocolError, RecordIndexError
from kvcache.protocol.messages import (
    ACK_REJECTED,
    ACK_SUCCESS,
    MessageType,
    Request,
    Response,
    ResponseStatus,
    pack_uint32,
    unpack_uint32,
)


class TestRequest:
    """Test Request factories."""

    def test_get(self):
        """GET has the key as its only record."""
        request = Request.get("hello")

        assert request.type == MessageType.GET
        assert request.records == (b"hello",)
        assert request.key == b"hello"

    def test_set_without_expire(self):
        """SET carries key then value."""
        request = Request.set("k", b"v")
        assert request.type == MessageType.SET
        assert request.records == (b"k", b"v")

    def test_set_with_expire(self):
        """A non-zero expiry adds a 4-byte record."""
        request = Request.set(b"k", b"v", expire=300)
        assert request.records == (b"k", b"v", b"\x00\x00\x01\x2c")

    def test_add_and_touch(self):
        """ADD mirrors SET; TOUCH carries an optional expiry."""
        assert Request.add("k", b"v").type == MessageType.ADD
        assert Request.touch("k").records == (b"k",)
        assert Request.touch("k", 1).records == (b"k", b"\x00\x00\x00\x01")

    def test_get_range(self):
        """GET_RANGE carries key, offset and length."""
        request = Request.get_range("k", 2, 5)
        assert request.records == (b"k", pack_uint32(2), pack_uint32(5))

    def test_keyless_requests(self):
        """STATS and CHECK have no records."""
        assert Request.stats().records == ()
        assert Request.check().key == b""

    def test_index_and_migration(self):
        """Migration requests carry the target descriptor as their only record."""
        assert Request.index() == Request(MessageType.GET_INDEX)
        assert Request.migration_begin("a:h:1").records == (b"a:h:1",)
        assert Request.migration_abort().records == ()

    def test_unicode_key(self):
        """str keys are encoded as UTF-8."""
        assert Request.get("ключ").key == "ключ".encode('utf-8')

    def test_records_frozen(self):
        """Lists are converted to tuples and the value is immutable."""
        records = [b"a", b"b"]
        request = Request(MessageType.SET, records)
        records.append(b"c")

        assert request.records == (b"a", b"b")
        with pytest.raises(dataclasses.FrozenInstanceError):
            request.type = MessageType.GET


class TestResponse:
    """Test Response factories and record access."""

    def test_ok(self):
        """ok() wraps the given records."""
        response = Response.ok(b"value")
        assert response.is_ok
        assert response.record(0) == b"value"

    def test_stored_and_rejected(self):
        """Write acknowledgements use one-byte sentinels."""
        assert Response.stored().records == (ACK_SUCCESS,)
        assert Response.rejected().records == (ACK_REJECTED,)
        assert ACK_SUCCESS == b"\x00"

    def test_miss(self):
        """miss() has no records."""
        response = Response.miss()
        assert response.status == ResponseStatus.MISS
        assert not response.is_ok
        assert response.records == ()

    def test_error_message(self):
        """error() carries a text message."""
        response = Response.error("disk full")
        assert response.status == ResponseStatus.ERROR
        assert response.message == "disk full"

    def test_index_response(self):
        """Index entries become key and 4-byte size record pairs."""
        response = Response.index_response({b"k": 5})
        assert response.records == (b"k", b"\x00\x00\x00\x05")

    def test_record_out_of_range(self):
        """Indexes past the end raise RecordIndexError."""
        with pytest.raises(RecordIndexError):
            Response.miss().record(0)
        with pytest.raises(RecordIndexError):
            Response.ok(b"a").record(1)

    def test_negative_index(self):
        """Negative indexes are out of range too."""
        with pytest.raises(RecordIndexError):
            Response.ok(b"a").record(-1)

    def test_record_index_error_family(self):
        """RecordIndexError is both a ProtocolError and an IndexError."""
        assert issubclass(RecordIndexError, ProtocolError)
        assert issubclass(RecordIndexError, IndexError)


class TestIntegers:
    """Test 32-bit integer records."""

    def test_pack_round_trip(self):
        """pack_uint32 and unpack_uint32 are inverses."""
        for value in (0, 1, 255, 65536, 0xFFFFFFFF):
            assert unpack_uint32(pack_uint32(value)) == value

    @pytest.mark.parametrize("value", [-1, 2 ** 32, 1.5, "10"])
    def test_pack_out_of_range(self, value):
        """Values outside 32 bits are a configuration error."""
        with pytest.raises(ConfigurationError):
            pack_uint32(value)

    def test_out_of_range_is_value_error(self):
        """Callers catching ValueError keep working."""
        with pytest.raises(ValueError):
            pack_uint32(-1)

    def test_negative_expire_refused(self):
        """A bad expiry fails while building the request."""
        with pytest.raises(ConfigurationError, match="-1"):
            Request.set("k", b"v", expire=-1)

    def test_unpack_wrong_size(self):
        """Only 4-byte records hold integers."""
        with pytest.raises(ProtocolError):
            unpack_uint32(b"\x00\x01")
