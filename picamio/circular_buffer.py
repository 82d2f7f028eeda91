"""A fixed-size ring of bytes."""

from __future__ import annotations


class CircularBuffer:
    """Byte ring buffer; one slot is always left free to tell full from empty."""

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError("circular buffer size must be positive")
        self._size = size
        self._buf = bytearray(size)
        self._rptr = 0
        self._wptr = 0

    def empty(self) -> bool:
        return self._rptr == self._wptr

    def available(self) -> int:
        """Number of bytes that can still be written."""
        if self._wptr == self._rptr:
            return self._size - 1
        return (self._size - self._wptr + self._rptr) % self._size - 1

    def skip(self, n: int) -> None:
        self._rptr = (self._rptr + n) % self._size

    def read(self, n: int) -> bytes:
        parts = []
        if self._rptr + n >= self._size:
            parts.append(bytes(self._buf[self._rptr:]))
            n -= self._size - self._rptr
            self._rptr = 0
        parts.append(bytes(self._buf[self._rptr:self._rptr + n]))
        self._rptr += n
        return b"".join(parts)

    def pad(self, n: int) -> None:
        self._wptr = (self._wptr + n) % self._size

    def write(self, data) -> None:
        src = memoryview(data).cast("B")
        dst = memoryview(self._buf)
        n = len(src)
        if self._wptr + n >= self._size:
            first = self._size - self._wptr
            dst[self._wptr:] = src[:first]
            src = src[first:]
            n -= first
            self._wptr = 0
        dst[self._wptr:self._wptr + n] = src
        self._wptr += n