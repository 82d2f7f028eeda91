"""Motion-JPEG encoder running several encoding threads."""

from __future__ import annotations

import dataclasses
import logging
import queue
import threading
import time

from picamio.encoder import Encoder
from picamio.jpeg import yuv_to_jpeg
from picamio.types import PixelFormat, StreamInfo, VideoOptions

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.2


class MjpegEncoder(Encoder):
    """Encodes YUV420 frames as JPEGs; output keeps the order frames came in."""

    NUM_ENC_THREADS = 4

    def __init__(self, options: VideoOptions) -> None:
        super().__init__(options)
        self._encode_queue: queue.Queue = queue.Queue()
        self._index_lock = threading.Lock()
        self._next_index = 0
        self._results: dict[int, tuple] = {}
        self._cond = threading.Condition()
        self._abort_encode = threading.Event()
        self._abort_output = threading.Event()
        self._closed = False
        self._output_thread = threading.Thread(target=self._output_loop, name="mjpeg-output", daemon=True)
        self._output_thread.start()
        self._encode_threads = [
            threading.Thread(target=self._encode_loop, args=(num,), name=f"mjpeg-encode-{num}", daemon=True)
            for num in range(self.NUM_ENC_THREADS)
        ]
        for thread in self._encode_threads:
            thread.start()
        logger.debug("Opened MjpegEncoder")

    def encode_buffer(self, data, info: StreamInfo, timestamp_us: int) -> None:
        if self._closed:
            raise ValueError("encoder is closed")
        with self._index_lock:
            index = self._next_index
            self._next_index += 1
            self._encode_queue.put((index, data, info, timestamp_us))

    def _encode(self, data, info: StreamInfo) -> bytes:
        # Frames are always treated as planar YUV420.
        info = dataclasses.replace(info, pixel_format=PixelFormat.YUV420)
        return yuv_to_jpeg(data, info, info.width, info.height, self.options.quality, 0)

    def _encode_loop(self, num: int) -> None:
        frames = 0
        encode_time = 0.0
        while True:
            try:
                index, data, info, timestamp_us = self._encode_queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if self._abort_encode.is_set():
                    if frames:
                        logger.debug("Encode %d frames, average time %.3fms", frames, encode_time * 1000 / frames)
                    return
                continue
            start = time.perf_counter()
            try:
                result = (self._encode(data, info), timestamp_us, None)
            except Exception as exc:
                result = (None, timestamp_us, exc)
            encode_time += time.perf_counter() - start
            frames += 1
            with self._cond:
                self._results[index] = result
                self._cond.notify_all()

    def _output_loop(self) -> None:
        index = 0
        while True:
            with self._cond:
                while index not in self._results:
                    if self._abort_output.is_set() and not self._results:
                        return
                    self._cond.wait(_POLL_SECONDS)
                jpeg, timestamp_us, error = self._results.pop(index)
            index += 1
            try:
                self._input_done()
                if error is not None:
                    raise error
                self._output_ready(jpeg, timestamp_us, True)
            except Exception as exc:
                self._record_error(exc)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._abort_encode.set()
            for thread in self._encode_threads:
                thread.join()
            self._abort_output.set()
            self._output_thread.join()
            logger.debug("MjpegEncoder closed")
        super().close()