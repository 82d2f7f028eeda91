"""Write 24-bit RGB frames as PNG files."""

from __future__ import annotations

import io
import logging
import sys

from PIL import Image

from picamio.types import PixelFormat, StillOptions, StreamInfo

logger = logging.getLogger(__name__)


def _first_plane(data):
    if isinstance(data, (list, tuple)):
        if not data:
            raise ValueError("no image planes given")
        return data[0]
    return data


def png_save(data, info: StreamInfo, filename: str, options: StillOptions) -> None:
    """Write a BGR888 frame as an 8-bit RGB PNG; "-" means stdout."""
    if info.pixel_format is not PixelFormat.BGR888:
        raise ValueError("pixel format for png should be BGR")

    buf = memoryview(_first_plane(data)).cast("B")
    line = info.width * 3
    pixels = b"".join(
        bytes(buf[row * info.stride:row * info.stride + line]) for row in range(info.height)
    )
    if len(pixels) != line * info.height:
        raise ValueError("not enough image data for png")

    image = Image.frombytes("RGB", (info.width, info.height), pixels)
    out = io.BytesIO()
    # Low compression gets most of the size reduction at much less cost.
    image.save(out, "PNG", compress_level=1)
    content = out.getvalue()

    if filename == "-":
        sys.stdout.buffer.write(content)
        sys.stdout.buffer.flush()
    else:
        with open(filename, "wb") as fp:
            fp.write(content)
    logger.debug("Wrote PNG file of %d bytes", len(content))