"""Write 24-bit RGB frames as BMP files."""

from __future__ import annotations

import logging
import struct
import sys

from picamio.types import PixelFormat, StillOptions, StreamInfo

logger = logging.getLogger(__name__)

# type, file size, two reserved words, offset of the pixel data
_FILE_HEADER = struct.Struct("<2sIHHI")
# size, width, height, planes, bit count, compression, image size,
# horizontal and vertical resolution, colours used, colours important
_IMAGE_HEADER = struct.Struct("<IIiHHIIIIII")

_BITS_PER_PIXEL = 24
_PELS_PER_METRE = 100000


def _first_plane(data):
    if isinstance(data, (list, tuple)):
        if not data:
            raise ValueError("no image planes given")
        return data[0]
    return data


def bmp_save(data, info: StreamInfo, filename: str, options: StillOptions) -> None:
    """Write an RGB888 frame as a top-down 24-bit BMP; "-" means stdout."""
    if info.pixel_format is not PixelFormat.RGB888:
        raise ValueError("pixel format for bmp should be RGB")

    buf = memoryview(_first_plane(data)).cast("B")
    line = info.width * 3
    pitch = (line + 3) & ~3  # rows are padded to multiples of 4 bytes
    padding = bytes(pitch - line)
    offset = _FILE_HEADER.size + _IMAGE_HEADER.size
    filesize = offset + info.height * pitch

    parts = [
        _FILE_HEADER.pack(b"BM", filesize, 0, 0, offset),
        # A negative height makes the image come out the right way up.
        _IMAGE_HEADER.pack(
            _IMAGE_HEADER.size, info.width, -info.height, 1, _BITS_PER_PIXEL,
            0, 0, _PELS_PER_METRE, _PELS_PER_METRE, 0, 0,
        ),
    ]
    for row in range(info.height):
        start = row * info.stride
        chunk = buf[start:start + line]
        if len(chunk) != line:
            raise ValueError(f"failed to write BMP file, row {row}")
        parts.append(bytes(chunk))
        parts.append(padding)
    content = b"".join(parts)

    if filename == "-":
        sys.stdout.buffer.write(content)
        sys.stdout.buffer.flush()
    else:
        with open(filename, "wb") as fp:
            fp.write(content)
    logger.debug("Wrote %d bytes to BMP file", filesize)