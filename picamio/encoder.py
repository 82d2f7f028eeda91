"""Base class for video encoders that run in the background."""

from __future__ import annotations

import abc
import threading
from typing import Callable, Optional

from picamio.types import StreamInfo, VideoOptions

InputDoneCallback = Callable[[], None]
OutputReadyCallback = Callable[[object, int, bool], None]


class Encoder(abc.ABC):
    """Takes raw frames and hands encoded ones to a callback.

    The input-done callback is called once the encoder has finished with a
    frame it was given. The output-ready callback receives the encoded data,
    its timestamp in microseconds and whether it is a keyframe; the data must
    not be kept once the callback returns.
    """

    def __init__(self, options: VideoOptions) -> None:
        self.options = options
        self._input_done_callback: Optional[InputDoneCallback] = None
        self._output_ready_callback: Optional[OutputReadyCallback] = None
        self._errors: list[BaseException] = []
        self._errors_lock = threading.Lock()

    def set_input_done_callback(self, callback: InputDoneCallback) -> None:
        self._input_done_callback = callback

    def set_output_ready_callback(self, callback: OutputReadyCallback) -> None:
        self._output_ready_callback = callback

    @abc.abstractmethod
    def encode_buffer(self, data, info: StreamInfo, timestamp_us: int) -> None:
        """Queue one frame for encoding."""

    def _input_done(self) -> None:
        if self._input_done_callback is not None:
            self._input_done_callback()

    def _output_ready(self, data, timestamp_us: int, keyframe: bool) -> None:
        if self._output_ready_callback is not None:
            self._output_ready_callback(data, timestamp_us, keyframe)

    def _record_error(self, exc: BaseException) -> None:
        with self._errors_lock:
            self._errors.append(exc)

    def close(self) -> None:
        """Release the encoder, raising the first error its workers met."""
        with self._errors_lock:
            errors, self._errors = self._errors, []
        if errors:
            raise errors[0]

    def __enter__(self):
        return self

    def __exit__(self, *args) -> None:
        self.close()