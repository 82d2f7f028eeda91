"""JPEG still encoding with an EXIF block and an embedded thumbnail."""

from __future__ import annotations

import enum
import io
import logging
import re
import struct
import sys
import time
from dataclasses import dataclass
from itertools import chain
from typing import Any, Mapping, Optional, Sequence

from PIL import Image

from picamio.types import PixelFormat, StillOptions, StreamInfo

logger = logging.getLogger(__name__)

MAKE_STRING = "Raspberry Pi"
SOFTWARE_STRING = "picamio"

_EXIF_HEADER = b"\xff\xd8\xff\xe1"
_EXIF_PREAMBLE = b"Exif\x00\x00"
_THUMBNAIL_LIMIT = 60000  # the whole EXIF segment must stay below 65536 bytes


class ExifFormat(enum.IntEnum):
    BYTE = 1
    ASCII = 2
    SHORT = 3
    LONG = 4
    RATIONAL = 5
    SBYTE = 6
    UNDEFINED = 7
    SSHORT = 8
    SLONG = 9
    SRATIONAL = 10


class ExifIfd(enum.IntEnum):
    IFD0 = 0
    IFD1 = 1
    EXIF = 2
    GPS = 3
    INTEROPERABILITY = 4


_IFD_NAMES = {
    "EXIF": ExifIfd.EXIF,
    "IFD0": ExifIfd.IFD0,
    "IFD1": ExifIfd.IFD1,
    "EINT": ExifIfd.INTEROPERABILITY,
    "GPS": ExifIfd.GPS,
}

F = ExifFormat
# Tag name -> (tag number, default format, components; 0 means variable).
_TAGS: dict[str, tuple[int, ExifFormat, int]] = {
    "ImageWidth": (0x0100, F.SHORT, 1),
    "ImageLength": (0x0101, F.SHORT, 1),
    "Compression": (0x0103, F.SHORT, 1),
    "ImageDescription": (0x010E, F.ASCII, 0),
    "Make": (0x010F, F.ASCII, 0),
    "Model": (0x0110, F.ASCII, 0),
    "Orientation": (0x0112, F.SHORT, 1),
    "XResolution": (0x011A, F.RATIONAL, 1),
    "YResolution": (0x011B, F.RATIONAL, 1),
    "ResolutionUnit": (0x0128, F.SHORT, 1),
    "Software": (0x0131, F.ASCII, 0),
    "DateTime": (0x0132, F.ASCII, 0),
    "Artist": (0x013B, F.ASCII, 0),
    "WhitePoint": (0x013E, F.RATIONAL, 2),
    "PrimaryChromaticities": (0x013F, F.RATIONAL, 6),
    "JPEGInterchangeFormat": (0x0201, F.LONG, 1),
    "JPEGInterchangeFormatLength": (0x0202, F.LONG, 1),
    "YCbCrCoefficients": (0x0211, F.UNDEFINED, 0),
    "YCbCrPositioning": (0x0213, F.SHORT, 1),
    "ReferenceBlackWhite": (0x0214, F.RATIONAL, 6),
    "Copyright": (0x8298, F.ASCII, 0),
    "ExposureTime": (0x829A, F.RATIONAL, 1),
    "FNumber": (0x829D, F.RATIONAL, 1),
    "ExposureProgram": (0x8822, F.SHORT, 1),
    "ISOSpeedRatings": (0x8827, F.SHORT, 1),
    "ExifVersion": (0x9000, F.UNDEFINED, 4),
    "DateTimeOriginal": (0x9003, F.ASCII, 0),
    "DateTimeDigitized": (0x9004, F.ASCII, 0),
    "ShutterSpeedValue": (0x9201, F.SRATIONAL, 1),
    "ApertureValue": (0x9202, F.RATIONAL, 1),
    "BrightnessValue": (0x9203, F.SRATIONAL, 1),
    "ExposureBiasValue": (0x9204, F.SRATIONAL, 1),
    "MaxApertureValue": (0x9205, F.RATIONAL, 1),
    "SubjectDistance": (0x9206, F.RATIONAL, 1),
    "MeteringMode": (0x9207, F.SHORT, 1),
    "LightSource": (0x9208, F.SHORT, 1),
    "Flash": (0x9209, F.SHORT, 1),
    "FocalLength": (0x920A, F.RATIONAL, 1),
    "UserComment": (0x9286, F.UNDEFINED, 0),
    "ColorSpace": (0xA001, F.SHORT, 1),
    "PixelXDimension": (0xA002, F.LONG, 1),
    "PixelYDimension": (0xA003, F.LONG, 1),
    "ExposureMode": (0xA402, F.SHORT, 1),
    "WhiteBalance": (0xA403, F.SHORT, 1),
    "DigitalZoomRatio": (0xA404, F.RATIONAL, 1),
    "FocalLengthIn35mmFilm": (0xA405, F.SHORT, 1),
    "SceneCaptureType": (0xA406, F.SHORT, 1),
    "GPSLatitudeRef": (0x0001, F.ASCII, 0),
    "GPSLatitude": (0x0002, F.RATIONAL, 3),
    "GPSLongitudeRef": (0x0003, F.ASCII, 0),
    "GPSLongitude": (0x0004, F.RATIONAL, 3),
    "GPSAltitude": (0x0006, F.RATIONAL, 1),
}
del F

# Tags whose format is undefined by default but which have a known layout.
_EXCEPTIONS: dict[int, tuple[ExifFormat, int]] = {
    0x0211: (ExifFormat.RATIONAL, 3),
}

_TAG_EXIF_POINTER = 0x8769
_TAG_GPS_POINTER = 0x8825
_TAG_INTEROP_POINTER = 0xA005

_ITEM_SIZE = {
    ExifFormat.BYTE: 1,
    ExifFormat.ASCII: 1,
    ExifFormat.SHORT: 2,
    ExifFormat.LONG: 4,
    ExifFormat.RATIONAL: 8,
    ExifFormat.SBYTE: 1,
    ExifFormat.UNDEFINED: 1,
    ExifFormat.SSHORT: 2,
    ExifFormat.SLONG: 4,
    ExifFormat.SRATIONAL: 8,
}

_INT_LAYOUT = {
    ExifFormat.BYTE: ("<B", 8, False),
    ExifFormat.SBYTE: ("<b", 8, True),
    ExifFormat.SHORT: ("<H", 16, False),
    ExifFormat.SSHORT: ("<h", 16, True),
    ExifFormat.LONG: ("<I", 32, False),
    ExifFormat.SLONG: ("<i", 32, True),
}

_TAG_SPEC = re.compile(r"([^.]{1,4})\.([^=]{1,127})=")
_INTEGER = re.compile(r"\s*([+-]?\d+)")
_RATIONAL = re.compile(r"\s*([+-]?\d+)/\s*([+-]?\d+)")


def _wrap(value: int, bits: int, signed: bool) -> int:
    value &= (1 << bits) - 1
    if signed and value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


_READ_ERRORS = {
    ExifFormat.SHORT: "failed to read EXIF unsigned short",
    ExifFormat.SSHORT: "failed to read EXIF signed short",
    ExifFormat.LONG: "failed to read EXIF unsigned long",
    ExifFormat.SLONG: "failed to read EXIF signed long",
    ExifFormat.RATIONAL: "failed to read EXIF unsigned rational",
    ExifFormat.SRATIONAL: "failed to read EXIF signed rational",
}


def _read_value(fmt: ExifFormat, text: str, pos: int) -> tuple[Any, int]:
    """Parse one value of the given format at pos; return it and the characters used."""
    if fmt not in _READ_ERRORS:
        raise ValueError(f"cannot read EXIF values of format {fmt.name}")
    if fmt in (ExifFormat.RATIONAL, ExifFormat.SRATIONAL):
        match = _RATIONAL.match(text, pos)
        if match is None:
            raise ValueError(_READ_ERRORS[fmt])
        signed = fmt is ExifFormat.SRATIONAL
        value = (_wrap(int(match.group(1)), 32, signed), _wrap(int(match.group(2)), 32, signed))
        return value, match.end() - pos
    match = _INTEGER.match(text, pos)
    if match is None:
        raise ValueError(_READ_ERRORS[fmt])
    _, bits, signed = _INT_LAYOUT[fmt]
    return _wrap(int(match.group(1)), bits, signed), match.end() - pos


@dataclass
class _Entry:
    fmt: ExifFormat
    components: int
    values: Optional[Any] = None

    def payload(self) -> bytes:
        if self.fmt in (ExifFormat.ASCII, ExifFormat.UNDEFINED):
            data = self.values if self.values is not None else b""
            return bytes(data).ljust(self.components, b"\x00")[: self.components]
        values = self.values
        if values is None:
            zero = (0, 0) if self.fmt in (ExifFormat.RATIONAL, ExifFormat.SRATIONAL) else 0
            values = [zero] * self.components
        if self.fmt in (ExifFormat.RATIONAL, ExifFormat.SRATIONAL):
            signed = self.fmt is ExifFormat.SRATIONAL
            code = "<ii" if signed else "<II"
            return b"".join(
                struct.pack(code, _wrap(num, 32, signed), _wrap(den, 32, signed)) for num, den in values
            )
        code, bits, signed = _INT_LAYOUT[self.fmt]
        return b"".join(struct.pack(code, _wrap(v, bits, signed)) for v in values)


def _ifd_size(items: list[tuple[int, int, int, bytes]]) -> int:
    data = sum(len(p) + (len(p) & 1) for _, _, _, p in items if len(p) > 4)
    return 2 + 12 * len(items) + 4 + data


def _ifd_bytes(items: list[tuple[int, int, int, bytes]], base: int, next_offset: int) -> bytes:
    items = sorted(items, key=lambda item: item[0])
    data_offset = base + 2 + 12 * len(items) + 4
    head = bytearray(struct.pack("<H", len(items)))
    data = bytearray()
    for tag, fmt, count, payload in items:
        if len(payload) <= 4:
            field = payload.ljust(4, b"\x00")
        else:
            field = struct.pack("<I", data_offset + len(data))
            data += payload
            if len(data) & 1:
                data += b"\x00"
        head += struct.pack("<HHI", tag, fmt, count) + field
    head += struct.pack("<I", next_offset)
    return bytes(head + data)


class ExifData:
    """EXIF tags grouped by IFD, serialised little-endian."""

    def __init__(self) -> None:
        self._ifds: dict[ExifIfd, dict[int, _Entry]] = {ifd: {} for ifd in ExifIfd}

    def _create(self, ifd: ExifIfd, tag: int, fmt: ExifFormat, components: int) -> _Entry:
        entries = self._ifds[ifd]
        if tag not in entries:
            entries[tag] = _Entry(fmt, components)
        return entries[tag]

    def set_entry(self, ifd, tag, fmt, values) -> None:
        """Set a tag (number or name) in an IFD to the given values."""
        ifd = ExifIfd(ifd)
        fmt = ExifFormat(fmt)
        if isinstance(tag, str):
            if tag not in _TAGS:
                raise KeyError(f"no EXIF tag {tag}")
            tag = _TAGS[tag][0]
        if fmt in (ExifFormat.ASCII, ExifFormat.UNDEFINED):
            data = values.encode() if isinstance(values, str) else bytes(values)
            entry = _Entry(fmt, len(data), data)
        else:
            items = list(values)
            entry = _Entry(fmt, len(items), items)
        self._ifds[ifd][tag] = entry

    def read_tag(self, text: str) -> None:
        """Apply a tag given as ``IFD.TagName=value[,value...]``."""
        match = _TAG_SPEC.match(text)
        if match is None:
            raise ValueError("failed to read EXIF IFD and tag")
        ifd_name, tag_name = match.group(1), match.group(2)
        if ifd_name not in _IFD_NAMES:
            raise ValueError(f"bad IFD name {ifd_name}")
        ifd = _IFD_NAMES[ifd_name]
        spec = _TAGS.get(tag_name)
        if spec is None:
            logger.warning("no EXIF tag %s found - ignoring", tag_name)
            return
        tag, default_fmt, default_components = spec
        entry = self._create(ifd, tag, default_fmt, default_components)

        if entry.fmt is ExifFormat.UNDEFINED:
            if tag in _EXCEPTIONS:
                entry.fmt, entry.components = _EXCEPTIONS[tag]
                entry.values = None
            else:
                logger.warning("format for tag %s undefined - treating as ASCII", tag_name)
                entry.fmt = ExifFormat.ASCII

        pos = match.end()
        if entry.fmt is ExifFormat.ASCII:
            data = text[pos:].encode()
            entry.values = data
            entry.components = len(data)
            return

        if entry.components == 0 or entry.values is None:
            if entry.components == 0:
                entry.components = text[pos:].count(",") + 1
            entry.values = None

        values = []
        for _ in range(entry.components):
            if pos >= len(text):
                raise ValueError(f"too few parameters for EXIF tag {tag_name}")
            value, consumed = _read_value(entry.fmt, text, pos)
            values.append(value)
            pos += consumed + 1  # allow a comma
        entry.values = values

    def _items(self, ifd: ExifIfd) -> list[tuple[int, int, int, bytes]]:
        return [
            (tag, int(entry.fmt), entry.components, entry.payload())
            for tag, entry in self._ifds[ifd].items()
        ]

    def to_bytes(self) -> bytes:
        """Serialise as an APP1 payload: ``Exif\\0\\0`` then a TIFF structure."""
        pointer = lambda tag, offset: (tag, int(ExifFormat.LONG), 1, struct.pack("<I", offset))  # noqa: E731

        exif_items = self._items(ExifIfd.EXIF)
        interop_items = self._items(ExifIfd.INTEROPERABILITY)
        gps_items = self._items(ExifIfd.GPS)
        ifd1_items = self._items(ExifIfd.IFD1)
        ifd0_items = self._items(ExifIfd.IFD0)

        has_interop = bool(interop_items)
        has_exif = bool(exif_items) or has_interop
        has_gps = bool(gps_items)
        if has_interop:
            exif_items.append(pointer(_TAG_INTEROP_POINTER, 0))
        if has_exif:
            ifd0_items.append(pointer(_TAG_EXIF_POINTER, 0))
        if has_gps:
            ifd0_items.append(pointer(_TAG_GPS_POINTER, 0))

        offset = 8
        ifd0_offset = offset
        offset += _ifd_size(ifd0_items)
        exif_offset = offset
        if has_exif:
            offset += _ifd_size(exif_items)
        interop_offset = offset
        if has_interop:
            offset += _ifd_size(interop_items)
        gps_offset = offset
        if has_gps:
            offset += _ifd_size(gps_items)
        ifd1_offset = offset if ifd1_items else 0

        def repoint(items, tag, value):
            return [pointer(tag, value) if item[0] == tag else item for item in items]

        ifd0_items = repoint(repoint(ifd0_items, _TAG_EXIF_POINTER, exif_offset), _TAG_GPS_POINTER, gps_offset)
        exif_items = repoint(exif_items, _TAG_INTEROP_POINTER, interop_offset)

        body = bytearray(b"II*\x00" + struct.pack("<I", 8))
        body += _ifd_bytes(ifd0_items, ifd0_offset, ifd1_offset)
        if has_exif:
            body += _ifd_bytes(exif_items, exif_offset, 0)
        if has_interop:
            body += _ifd_bytes(interop_items, interop_offset, 0)
        if has_gps:
            body += _ifd_bytes(gps_items, gps_offset, 0)
        if ifd1_items:
            body += _ifd_bytes(ifd1_items, ifd1_offset, 0)
        return _EXIF_PREAMBLE + bytes(body)


def _encode(image: Image.Image, quality: int, restart: int) -> bytes:
    params: dict[str, Any] = {"quality": min(max(quality, 1), 100), "subsampling": 2}
    if restart:
        params["restart_marker_blocks"] = restart
    out = io.BytesIO()
    image.save(out, "JPEG", **params)
    return out.getvalue()


def _yuyv_image(buf: bytes, info: StreamInfo, ow: int, oh: int) -> Image.Image:
    offsets = []
    for i in range(ow):
        off = (i * info.width) // ow * 2
        aligned = off & ~3
        offsets.extend((off, aligned + 1, aligned + 3))
    span = max(offsets) + 1 if offsets else 0
    out = bytearray()
    for y in range(oh):
        base = (y * info.height) // oh * info.stride
        row = buf[base:base + span]
        out += bytes(map(row.__getitem__, offsets))
    return Image.frombytes("YCbCr", (ow, oh), bytes(out))


def _yuv420_full_image(buf: bytes, info: StreamInfo) -> Image.Image:
    w, h, stride = info.width, info.height, info.stride
    stride2 = stride // 2
    u_base = stride * h
    v_base = u_base + stride2 * (h // 2)
    cw, ch = w // 2, h // 2
    y_plane = Image.frombytes("L", (w, h), buf[:stride * h], "raw", "L", stride)
    planes = [y_plane]
    for base in (u_base, v_base):
        plane = Image.frombytes("L", (cw, ch), buf[base:base + stride2 * ch], "raw", "L", stride2)
        planes.append(plane.resize((w, h), Image.NEAREST))
    return Image.merge("YCbCr", planes)


def _yuv420_scaled_image(buf: bytes, info: StreamInfo, ow: int, oh: int) -> Image.Image:
    stride2 = info.stride // 2
    u_base = info.stride * info.height
    v_base = u_base + stride2 * (info.height // 2)
    h_offsets = [(i * info.width) // ow for i in range(ow)]
    out = bytearray()
    for y in range(oh):
        offset = (y * info.height) // oh * info.stride
        offset_uv = ((y // 2) * info.height) // oh * stride2
        ys = [buf[offset + o] for o in h_offsets]
        us = [buf[u_base + offset_uv + o // 2] for o in h_offsets]
        vs = [buf[v_base + offset_uv + o // 2] for o in h_offsets]
        out += bytes(chain.from_iterable(zip(ys, us, vs)))
    return Image.frombytes("YCbCr", (ow, oh), bytes(out))


def yuv_to_jpeg(data, info: StreamInfo, output_width: int, output_height: int, quality: int, restart: int) -> bytes:
    """Encode a YUYV or YUV420 frame as JPEG, resampling to the output size."""
    buf = bytes(data)
    if info.pixel_format is PixelFormat.YUYV:
        image = _yuyv_image(buf, info, output_width, output_height)
    elif info.pixel_format is PixelFormat.YUV420:
        if info.width == output_width and info.height == output_height:
            image = _yuv420_full_image(buf, info)
        else:
            image = _yuv420_scaled_image(buf, info, output_width, output_height)
    else:
        raise ValueError("unsupported YUV format in JPEG encode")
    return _encode(image, quality, restart)


def create_exif_data(data, info: StreamInfo, metadata: Mapping[str, Any], cam_model: str,
                     options: StillOptions) -> tuple[bytes, bytes]:
    """Build the EXIF block and the thumbnail JPEG (empty if thumbnails are off)."""
    exif = ExifData()
    ifd = ExifIfd.EXIF
    exif.set_entry(ifd, "Make", ExifFormat.ASCII, MAKE_STRING)
    exif.set_entry(ifd, "Model", ExifFormat.ASCII, cam_model)
    exif.set_entry(ifd, "Software", ExifFormat.ASCII, SOFTWARE_STRING)
    time_string = time.strftime("%Y:%m:%d %H:%M:%S", time.localtime())
    for name in ("DateTime", "DateTimeOriginal", "DateTimeDigitized"):
        exif.set_entry(ifd, name, ExifFormat.ASCII, time_string)

    exposure_time = metadata.get("ExposureTime")
    if exposure_time is not None:
        logger.debug("Exposure time: %s", exposure_time)
        exif.set_entry(ifd, "ExposureTime", ExifFormat.RATIONAL, [(int(exposure_time), 1000000)])
    analogue_gain = metadata.get("AnalogueGain")
    if analogue_gain is not None:
        digital_gain = metadata.get("DigitalGain")
        gain = analogue_gain * (digital_gain if digital_gain is not None else 1.0)
        logger.debug("Ag %s Dg %s Total %s", analogue_gain, digital_gain, gain)
        exif.set_entry(ifd, "ISOSpeedRatings", ExifFormat.SHORT, [int(100 * gain)])
    lens_position = metadata.get("LensPosition")
    if lens_position is not None:
        exif.set_entry(ifd, "SubjectDistance", ExifFormat.RATIONAL, [(1000, int(1000.0 * lens_position))])

    for item in options.exif:
        logger.debug("Processing EXIF item: %s", item)
        exif.read_tag(item)

    thumb = b""
    if options.thumb_quality:
        logger.debug("Thumbnail dimensions are %d x %d", options.thumb_width, options.thumb_height)
        ifd1 = ExifIfd.IFD1
        exif.set_entry(ifd1, "ImageWidth", ExifFormat.SHORT, [options.thumb_width])
        exif.set_entry(ifd1, "ImageLength", ExifFormat.SHORT, [options.thumb_height])
        exif.set_entry(ifd1, "Compression", ExifFormat.SHORT, [6])
        exif.set_entry(ifd1, "JPEGInterchangeFormat", ExifFormat.LONG, [0])
        exif.set_entry(ifd1, "JPEGInterchangeFormatLength", ExifFormat.LONG, [0])

        # The thumbnail follows the EXIF block, so its size fixes the offset.
        exif_len = len(exif.to_bytes())

        quality = options.thumb_quality
        while quality > 0:
            thumb = yuv_to_jpeg(data, info, options.thumb_width, options.thumb_height, quality, 0)
            if len(thumb) < _THUMBNAIL_LIMIT:
                break
            quality -= 5
        logger.debug("Thumbnail size %d", len(thumb))
        if quality <= 0:
            raise RuntimeError("failed to make acceptable thumbnail")

        exif.set_entry(ifd1, "JPEGInterchangeFormat", ExifFormat.LONG, [exif_len - len(_EXIF_PREAMBLE)])
        exif.set_entry(ifd1, "JPEGInterchangeFormatLength", ExifFormat.LONG, [len(thumb)])

    return exif.to_bytes(), thumb


def _strip_jfif(jpeg: bytes) -> bytes:
    """Drop the SOI and any APP0 segments so the EXIF APP1 can take their place."""
    if jpeg[:2] != b"\xff\xd8":
        raise ValueError("encoder did not produce a JPEG")
    pos = 2
    while jpeg[pos:pos + 2] == b"\xff\xe0":
        (length,) = struct.unpack_from(">H", jpeg, pos + 2)
        pos += 2 + length
    return jpeg[pos:]


def jpeg_save(data, info: StreamInfo, metadata: Mapping[str, Any], filename: str, cam_model: str,
              options: StillOptions) -> None:
    """Write a YUV frame as a JPEG file with EXIF and thumbnail; "-" means stdout."""
    if (info.width & 1) or (info.height & 1):
        raise ValueError("both width and height must be even")
    if isinstance(data, (list, tuple)):
        if len(data) != 1:
            raise ValueError("only single plane YUV supported")
        data = data[0]

    exif, thumb = create_exif_data(data, info, metadata, cam_model, options)
    jpeg = yuv_to_jpeg(data, info, info.width, info.height, options.quality, options.restart)
    logger.debug("JPEG size is %d", len(jpeg))
    logger.debug("EXIF data len %d", len(exif))

    segment_length = len(exif) + len(thumb) + 2
    content = b"".join((
        _EXIF_HEADER,
        bytes(((segment_length >> 8) & 0xFF, segment_length & 0xFF)),
        exif,
        thumb,
        _strip_jfif(jpeg),
    ))
    if filename == "-":
        sys.stdout.buffer.write(content)
        sys.stdout.buffer.flush()
    else:
        with open(filename, "wb") as fp:
            fp.write(content)