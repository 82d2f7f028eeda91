"""Write encoded video to files, optionally in segments or split on restart."""

from __future__ import annotations

import logging
import sys

from picamio.output import Flag, Output
from picamio.types import VideoOptions

logger = logging.getLogger(__name__)


def _trunc_ms(timestamp_us: int) -> int:
    return -(-timestamp_us // 1000) if timestamp_us < 0 else timestamp_us // 1000


def _format_filename(pattern: str, count: int) -> str:
    try:
        return pattern % count
    except TypeError:
        pass
    except ValueError as exc:
        raise ValueError(f"failed to generate filename from {pattern!r}") from exc
    try:
        return pattern % ()
    except (TypeError, ValueError):
        return pattern


class FileOutput(Output):
    """Sends frames to a file, or to a numbered series of files."""

    def __init__(self, options: VideoOptions) -> None:
        super().__init__(options)
        self._file = None
        self._owns_file = False
        self._count = 0
        self._file_start_time_ms = 0

    def _output_buffer(self, data, timestamp_us: int, flags: Flag) -> None:
        opts = self.options
        # A new file starts when a full segment reaches its next keyframe, or on a
        # restart in split mode.
        if (
            self._file is None
            or (
                opts.segment
                and flags & Flag.KEYFRAME
                and _trunc_ms(timestamp_us) - self._file_start_time_ms > opts.segment
            )
            or (opts.split and flags & Flag.RESTART)
        ):
            self._close_file()
            self._open_file(timestamp_us)

        logger.debug("FileOutput: output buffer size %d", len(data))
        if self._file is not None and len(data):
            self._file.write(data)
            if opts.flush:
                self._file.flush()

    def _open_file(self, timestamp_us: int) -> None:
        opts = self.options
        if opts.output == "-":
            self._file = sys.stdout.buffer
            self._owns_file = False
        elif opts.output:
            filename = _format_filename(opts.output, self._count)
            self._count += 1
            if opts.wrap:
                self._count %= opts.wrap
            self._file = open(filename, "wb")
            self._owns_file = True
            logger.debug("FileOutput: opened output file %s", filename)
            self._file_start_time_ms = _trunc_ms(timestamp_us)

    def _close_file(self) -> None:
        if self._file is None:
            return
        if self.options.flush:
            self._file.flush()
        if self._owns_file:
            self._file.close()
        self._file = None
        self._owns_file = False

    def close(self) -> None:
        if self._closed:
            return
        self._close_file()
        super().close()