"""Keep recent encoded frames in memory and write them out on close."""

from __future__ import annotations

import logging
import struct
import sys

from picamio.circular_buffer import CircularBuffer
from picamio.output import Flag, Output
from picamio.types import VideoOptions

logger = logging.getLogger(__name__)

_ALIGN = 16
# length, keyframe, timestamp; padded to a multiple of the alignment.
_HEADER = struct.Struct("<I?3xq")


class CircularOutput(Output):
    """Buffers frames in a ring of ``options.circular`` megabytes."""

    def __init__(self, options: VideoOptions) -> None:
        super().__init__(options)
        try:
            self._buffer = CircularBuffer(options.circular << 20)
            if options.output == "-":
                self._file = sys.stdout.buffer
                self._owns_file = False
            elif options.output:
                self._file = open(options.output, "wb")
                self._owns_file = True
            else:
                raise ValueError("could not open output file: no output given")
        except BaseException:
            super().close()
            raise

    def _read_header(self) -> tuple[int, bool, int]:
        return _HEADER.unpack(self._buffer.read(_HEADER.size))

    def _output_buffer(self, data, timestamp_us: int, flags: Flag) -> None:
        size = len(data)
        pad = (_ALIGN - size) & (_ALIGN - 1)
        while size + pad + _HEADER.size > self._buffer.available():
            if self._buffer.empty():
                raise RuntimeError("circular buffer too small")
            length, _, _ = self._read_header()
            self._buffer.skip((length + _ALIGN - 1) & ~(_ALIGN - 1))
        self._buffer.write(_HEADER.pack(size, bool(flags & Flag.KEYFRAME), timestamp_us))
        self._buffer.write(data)
        self._buffer.pad(pad)

    def _timestamp_ready(self, timestamp: int) -> None:
        # Timestamps are only written for the frames saved at the end.
        pass

    def close(self) -> None:
        if self._closed:
            return
        # Output starts at the first keyframe still in the buffer.
        total = frames = 0
        seen_keyframe = False
        while not self._buffer.empty():
            length, keyframe, timestamp = self._read_header()
            seen_keyframe = seen_keyframe or keyframe
            if seen_keyframe:
                self._file.write(self._buffer.read(length))
                self._buffer.skip((_ALIGN - length) & (_ALIGN - 1))
                total += length
                if self._timestamps_file is not None:
                    Output._timestamp_ready(self, timestamp)
                frames += 1
            else:
                self._buffer.skip((length + _ALIGN - 1) & ~(_ALIGN - 1))
        if self._owns_file:
            self._file.close()
        else:
            self._file.flush()
        logger.info("Wrote %d bytes (%d frames)", total, frames)
        super().close()