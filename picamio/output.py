"""Base class for encoded-video sinks, with timestamp and metadata recording."""

from __future__ import annotations

import enum
import sys
from collections import deque
from typing import Any, Mapping, TextIO

from picamio.types import VideoOptions


class Flag(enum.IntFlag):
    NONE = 0
    KEYFRAME = 1
    RESTART = 2


class _State(enum.Enum):
    DISABLED = 0
    WAITING_KEYFRAME = 1
    RUNNING = 2


def _value_to_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return "[ " + ", ".join(_value_to_string(v) for v in value) + " ]"
    return str(value)


def start_metadata_output(stream: TextIO, fmt: str) -> None:
    """Write whatever opens a metadata document in the given format."""
    if fmt == "json":
        stream.write("[\n")


def write_metadata(stream: TextIO, fmt: str, metadata: Mapping[str, Any], first_write: bool) -> None:
    """Write one frame's metadata as "txt" lines or as a JSON object."""
    items = [(name, _value_to_string(value)) for name, value in metadata.items()]
    if fmt == "txt":
        for name, text in items:
            stream.write(f"{name}={text}\n")
        stream.write("\n")
        return
    entries = []
    for name, text in items:
        quote = '"' if "/" in text else ""
        entries.append(f'\n    "{name}": {quote}{text}{quote}')
    prefix = "" if first_write else ",\n"
    stream.write(prefix + "{" + ",".join(entries) + "\n}")


def stop_metadata_output(stream: TextIO, fmt: str) -> None:
    """Write whatever closes a metadata document in the given format."""
    if fmt == "json":
        stream.write("\n]\n")


def _trunc_divmod(value: int, divisor: int) -> tuple[int, int]:
    q, r = divmod(abs(value), divisor)
    return (-q, -r) if value < 0 else (q, r)


class Output:
    """Receives encoded frames; this base class discards them."""

    def __init__(self, options: VideoOptions) -> None:
        self.options = options
        self._timestamps_file = None
        self._metadata_file = None
        self._metadata_stream: TextIO = sys.stdout
        self._metadata_started = False
        self._metadata_queue: deque = deque()
        self._state = _State.WAITING_KEYFRAME
        self._time_offset = 0
        self._last_timestamp = 0
        self._closed = False
        try:
            if options.save_pts:
                self._timestamps_file = open(options.save_pts, "w")
                self._timestamps_file.write("# timecode format v2\n")
            if options.metadata and options.metadata != "-":
                self._metadata_file = open(options.metadata, "w")
                self._metadata_stream = self._metadata_file
                start_metadata_output(self._metadata_stream, options.metadata_format)
        except BaseException:
            self._release_files()
            raise
        self._enabled = not options.pause

    def signal(self) -> None:
        """Toggle whether output is enabled."""
        self._enabled = not self._enabled

    def output_ready(self, data, timestamp_us: int, keyframe: bool) -> None:
        """Accept one encoded frame; output restarts only on a keyframe."""
        flags = Flag.KEYFRAME if keyframe else Flag.NONE
        if not self._enabled:
            self._state = _State.DISABLED
        elif self._state is _State.DISABLED:
            self._state = _State.WAITING_KEYFRAME
        if self._state is _State.WAITING_KEYFRAME and keyframe:
            self._state = _State.RUNNING
            flags |= Flag.RESTART
        if self._state is not _State.RUNNING:
            return

        # Keep timestamps continuous across a pause.
        if flags & Flag.RESTART:
            self._time_offset = timestamp_us - self._last_timestamp
        self._last_timestamp = timestamp_us - self._time_offset

        self._output_buffer(data, self._last_timestamp, flags)

        if self._timestamps_file is not None:
            self._timestamp_ready(self._last_timestamp)

        if self.options.metadata and self._metadata_queue:
            metadata = self._metadata_queue.popleft()
            write_metadata(
                self._metadata_stream, self.options.metadata_format, metadata, not self._metadata_started
            )
            self._metadata_started = True

    def metadata_ready(self, metadata: Mapping[str, Any]) -> None:
        """Queue metadata for the next frame that is output."""
        if not self.options.metadata:
            return
        self._metadata_queue.append(dict(metadata))

    def _output_buffer(self, data, timestamp_us: int, flags: Flag) -> None:
        pass

    def _timestamp_ready(self, timestamp: int) -> None:
        ms, rem = _trunc_divmod(timestamp, 1000)
        self._timestamps_file.write(f"{ms}.{rem:03d}\n")
        if self.options.flush:
            self._timestamps_file.flush()

    def _release_files(self) -> None:
        if self._timestamps_file is not None:
            self._timestamps_file.close()
            self._timestamps_file = None
        if self._metadata_file is not None:
            self._metadata_file.close()
            self._metadata_file = None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.options.metadata:
            stop_metadata_output(self._metadata_stream, self.options.metadata_format)
            self._metadata_stream.flush()
        self._release_files()

    def __enter__(self):
        return self

    def __exit__(self, *args) -> None:
        self.close()