import pytest

from picamio.circular_buffer import CircularBuffer


def test_new_buffer_is_empty_with_one_slot_reserved():
    cb = CircularBuffer(16)
    assert cb.empty()
    assert cb.available() == 16 - 1


def test_write_then_read_round_trip():
    cb = CircularBuffer(32)
    cb.write(b"hello")
    assert not cb.empty()
    assert cb.read(5) == b"hello"
    assert cb.empty()


def test_available_shrinks_by_bytes_written():
    cb = CircularBuffer(20)
    cb.write(b"abcdef")
    assert cb.available() == 20 - 1 - 6


def test_wraparound_preserves_data():
    cb = CircularBuffer(8)
    cb.write(b"abcde")
    assert cb.read(5) == b"abcde"
    cb.write(b"123456")
    assert cb.read(6) == b"123456"
    assert cb.empty()


def test_skip_discards_bytes():
    cb = CircularBuffer(16)
    cb.write(b"abcdef")
    cb.skip(2)
    assert cb.read(4) == b"cdef"


def test_pad_leaves_gap_that_skip_passes_over():
    cb = CircularBuffer(16)
    cb.write(b"ab")
    cb.pad(3)
    cb.write(b"cd")
    assert cb.read(2) == b"ab"
    cb.skip(3)
    assert cb.read(2) == b"cd"
    assert cb.empty()


def test_zero_size_rejected():
    with pytest.raises(ValueError):
        CircularBuffer(0)