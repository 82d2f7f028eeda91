"""An encoder that passes raw frames straight through."""

from __future__ import annotations

import logging
import queue
import threading

from picamio.encoder import Encoder
from picamio.types import StreamInfo, VideoOptions

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.2


class NullEncoder(Encoder):
    """Returns every frame unchanged, flagged as a keyframe, from a worker thread."""

    def __init__(self, options: VideoOptions) -> None:
        super().__init__(options)
        self._queue: queue.Queue = queue.Queue()
        self._abort = threading.Event()
        self._closed = False
        logger.debug("Opened NullEncoder")
        self._thread = threading.Thread(target=self._output_loop, name="null-encoder-output", daemon=True)
        self._thread.start()

    def encode_buffer(self, data, info: StreamInfo, timestamp_us: int) -> None:
        if self._closed:
            raise ValueError("encoder is closed")
        self._queue.put((data, timestamp_us))

    def _output_loop(self) -> None:
        while True:
            try:
                data, timestamp_us = self._queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if self._abort.is_set():
                    return
                continue
            try:
                # The input-done callback must run before the output-ready one.
                self._input_done()
                self._output_ready(data, timestamp_us, True)
            except Exception as exc:
                self._record_error(exc)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._abort.set()
            self._thread.join()
            logger.debug("NullEncoder closed")
        super().close()