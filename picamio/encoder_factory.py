"""Choose the encoder that suits the requested codec."""

from __future__ import annotations

from picamio.encoder import Encoder
from picamio.mjpeg_encoder import MjpegEncoder
from picamio.null_encoder import NullEncoder
from picamio.types import StreamInfo, VideoOptions


def create_encoder(options: VideoOptions, info: StreamInfo) -> Encoder:
    """Return an encoder for options.codec, matched without regard to case."""
    codec = options.codec.lower()
    if codec == "yuv420":
        return NullEncoder(options)
    if codec == "h264":
        raise RuntimeError("Unable to find an appropriate H.264 codec")
    if codec == "mjpeg":
        return MjpegEncoder(options)
    raise ValueError(f"Unrecognised codec {options.codec}")