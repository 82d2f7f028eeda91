"""Save raw Bayer frames as DNG files."""

from __future__ import annotations

import logging
import math
import struct
import sys
import time
from array import array
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Mapping, Optional

from picamio.jpeg import MAKE_STRING, SOFTWARE_STRING
from picamio.types import PixelFormat, StillOptions, StreamInfo

logger = logging.getLogger(__name__)

_RGGB = (0, 1, 1, 2)
_GRBG = (1, 0, 2, 1)
_BGGR = (2, 1, 1, 0)
_GBRG = (1, 2, 0, 1)


@dataclass(frozen=True)
class BayerFormat:
    """How a raw pixel format is laid out: bit depth, CFA order and packing."""

    name: str
    bits: int
    order: tuple[int, int, int, int]
    packed: bool
    compressed: bool


P = PixelFormat
BAYER_FORMATS: dict[PixelFormat, BayerFormat] = {
    P.SRGGB10_CSI2P: BayerFormat("RGGB-10", 10, _RGGB, True, False),
    P.SGRBG10_CSI2P: BayerFormat("GRBG-10", 10, _GRBG, True, False),
    P.SBGGR10_CSI2P: BayerFormat("BGGR-10", 10, _BGGR, True, False),
    P.SGBRG10_CSI2P: BayerFormat("GBRG-10", 10, _GBRG, True, False),
    P.SRGGB10: BayerFormat("RGGB-10", 10, _RGGB, False, False),
    P.SGRBG10: BayerFormat("GRBG-10", 10, _GRBG, False, False),
    P.SBGGR10: BayerFormat("BGGR-10", 10, _BGGR, False, False),
    P.SGBRG10: BayerFormat("GBRG-10", 10, _GBRG, False, False),
    P.SRGGB12_CSI2P: BayerFormat("RGGB-12", 12, _RGGB, True, False),
    P.SGRBG12_CSI2P: BayerFormat("GRBG-12", 12, _GRBG, True, False),
    P.SBGGR12_CSI2P: BayerFormat("BGGR-12", 12, _BGGR, True, False),
    P.SGBRG12_CSI2P: BayerFormat("GBRG-12", 12, _GBRG, True, False),
    P.SRGGB12: BayerFormat("RGGB-12", 12, _RGGB, False, False),
    P.SGRBG12: BayerFormat("GRBG-12", 12, _GRBG, False, False),
    P.SBGGR12: BayerFormat("BGGR-12", 12, _BGGR, False, False),
    P.SGBRG12: BayerFormat("GBRG-12", 12, _GBRG, False, False),
    P.SRGGB16: BayerFormat("RGGB-16", 16, _RGGB, False, False),
    P.SGRBG16: BayerFormat("GRBG-16", 16, _GRBG, False, False),
    P.SBGGR16: BayerFormat("BGGR-16", 16, _BGGR, False, False),
    P.SGBRG16: BayerFormat("GBRG-16", 16, _GBRG, False, False),
    P.R10_CSI2P: BayerFormat("BGGR-10", 10, _BGGR, True, False),
    P.R10: BayerFormat("BGGR-10", 10, _BGGR, False, False),
    P.R12: BayerFormat("BGGR-12", 12, _BGGR, False, False),
    P.RGGB_PISP_COMP1: BayerFormat("RGGB-16-PISP", 16, _RGGB, False, True),
    P.GRBG_PISP_COMP1: BayerFormat("GRBG-16-PISP", 16, _GRBG, False, True),
    P.GBRG_PISP_COMP1: BayerFormat("GBRG-16-PISP", 16, _GBRG, False, True),
    P.BGGR_PISP_COMP1: BayerFormat("BGGR-16-PISP", 16, _BGGR, False, True),
}
del P


def _plane(data) -> bytes:
    if isinstance(data, (list, tuple)):
        if not data:
            raise ValueError("no image planes given")
        data = data[0]
    return bytes(memoryview(data).cast("B"))


def _check_length(buf: bytes, info: StreamInfo, row_bytes: int) -> None:
    if info.height and len(buf) < info.stride * (info.height - 1) + row_bytes:
        raise ValueError("not enough raw image data")


def unpack_10bit(data, info: StreamInfo) -> array:
    """Unpack CSI-2 10-bit packed rows (4 pixels in 5 bytes) into 16-bit samples."""
    buf = _plane(data)
    width = info.width
    groups = (width + 3) // 4
    _check_length(buf, info, groups * 5)
    out = array("H")
    for y in range(info.height):
        base = y * info.stride
        row = []
        for g in range(groups):
            p0, p1, p2, p3, low = buf[base + 5 * g:base + 5 * g + 5]
            row.extend((
                (p0 << 2) | (low & 3),
                (p1 << 2) | ((low >> 2) & 3),
                (p2 << 2) | ((low >> 4) & 3),
                (p3 << 2) | ((low >> 6) & 3),
            ))
        out.extend(row[:width])
    return out


def unpack_12bit(data, info: StreamInfo) -> array:
    """Unpack CSI-2 12-bit packed rows (2 pixels in 3 bytes) into 16-bit samples."""
    buf = _plane(data)
    width = info.width
    groups = (width + 1) // 2
    _check_length(buf, info, groups * 3)
    out = array("H")
    for y in range(info.height):
        base = y * info.stride
        row = []
        for g in range(groups):
            p0, p1, low = buf[base + 3 * g:base + 3 * g + 3]
            row.extend(((p0 << 4) | (low & 15), (p1 << 4) | ((low >> 4) & 15)))
        out.extend(row[:width])
    return out


def unpack_16bit(data, info: StreamInfo) -> array:
    """Copy 16-bit samples (native byte order) out of strided rows."""
    buf = _plane(data)
    row_bytes = 2 * info.width
    _check_length(buf, info, row_bytes)
    out = array("H")
    for y in range(info.height):
        base = y * info.stride
        out.frombytes(buf[base:base + row_bytes])
    return out


_COMPRESS_OFFSET = 2048
_COMPRESS_MODE = 1


def _postprocess(a: int) -> int:
    if _COMPRESS_MODE & 2:
        if _COMPRESS_MODE == 3 and a < 0x4000:
            a = a >> 2
        elif a < 0x1000:
            a = a >> 4
        elif a < 0x1800:
            a = (a - 0x800) >> 3
        elif a < 0x3000:
            a = (a - 0x1000) >> 2
        elif a < 0x6000:
            a = (a - 0x2000) >> 1
        elif a < 0xC000:
            a = a - 0x4000
        else:
            a = 2 * (a - 0x8000)
        a &= 0xFFFF
    return min(0xFFFF, a + _COMPRESS_OFFSET)


def _dequantize(q: int, qmode: int) -> int:
    if qmode == 0:
        value = 16 * q if q < 320 else 32 * (q - 160)
    elif qmode == 1:
        value = 64 * q
    elif qmode == 2:
        value = 128 * q
    else:
        value = 256 * q if q < 94 else min(0xFFFF, 512 * (q - 47))
    return value & 0xFFFF


def _sub_block(word: int) -> tuple[int, int, int, int]:
    qmode = word & 3
    if qmode < 3:
        field0 = (word >> 2) & 511
        field1 = (word >> 11) & 127
        field2 = (word >> 18) & 127
        field3 = (word >> 25) & 127
        if qmode == 2 and field0 >= 384:
            q1 = field0
            q2 = field1 + 384
        else:
            q1 = field0 if field1 >= 64 else field0 + 64 - field1
            q2 = field0 + field1 - 64 if field1 >= 64 else field0
        p1 = max(0, q1 - 64)
        p2 = max(0, q2 - 64)
        if qmode == 2:
            p1 = min(384, p1)
            p2 = min(384, p2)
        q0 = p1 + field2
        q3 = p2 + field3
    else:
        pack0 = (word >> 2) & 32767
        pack1 = (word >> 17) & 32767
        q0 = (pack0 & 15) + 16 * ((pack0 >> 8) // 11)
        q1 = (pack0 >> 4) % 176
        q2 = (pack1 & 15) + 16 * ((pack1 >> 8) // 11)
        q3 = (pack1 >> 4) % 176
    return tuple(_dequantize(q, qmode) for q in (q0, q1, q2, q3))


def uncompress(data, info: StreamInfo) -> array:
    """Decompress PiSP-compressed rows; each output row is padded to 8 pixels."""
    buf = _plane(data)
    padded = (info.width + 7) & ~7
    _check_length(buf, info, padded)
    out = array("H")
    block = [0] * 8
    for y in range(info.height):
        sp = y * info.stride
        for _ in range(padded // 8):
            w0, w1 = struct.unpack_from("<II", buf, sp)
            sp += 8
            block[0::2] = _sub_block(w0)
            block[1::2] = _sub_block(w1)
            out.extend(_postprocess(v) for v in block)
    return out


class Matrix:
    """A 3x3 matrix stored row by row."""

    __slots__ = ("values",)

    def __init__(self, values) -> None:
        vals = tuple(float(v) for v in values)
        if len(vals) != 9:
            raise ValueError("a 3x3 matrix needs 9 values")
        self.values = vals

    @classmethod
    def diagonal(cls, d0, d1, d2) -> "Matrix":
        return cls((d0, 0, 0, 0, d1, 0, 0, 0, d2))

    def transpose(self) -> "Matrix":
        m = self.values
        return Matrix((m[0], m[3], m[6], m[1], m[4], m[7], m[2], m[5], m[8]))

    def cofactor(self) -> "Matrix":
        m = self.values
        return Matrix((
            m[4] * m[8] - m[5] * m[7], -(m[3] * m[8] - m[5] * m[6]), m[3] * m[7] - m[4] * m[6],
            -(m[1] * m[8] - m[2] * m[7]), m[0] * m[8] - m[2] * m[6], -(m[0] * m[7] - m[1] * m[6]),
            m[1] * m[5] - m[2] * m[4], -(m[0] * m[5] - m[2] * m[3]), m[0] * m[4] - m[1] * m[3],
        ))

    def adjugate(self) -> "Matrix":
        return self.cofactor().transpose()

    def determinant(self) -> float:
        m = self.values
        return (m[0] * (m[4] * m[8] - m[5] * m[7])
                - m[1] * (m[3] * m[8] - m[5] * m[6])
                + m[2] * (m[3] * m[7] - m[4] * m[6]))

    def inverse(self) -> "Matrix":
        det = self.determinant()
        if det == 0:
            raise ValueError("matrix is singular")
        return self.adjugate() * (1.0 / det)

    def __mul__(self, other):
        if isinstance(other, Matrix):
            a, b = self.values, other.values
            return Matrix(
                a[i * 3] * b[j] + a[i * 3 + 1] * b[3 + j] + a[i * 3 + 2] * b[6 + j]
                for i in range(3)
                for j in range(3)
            )
        if isinstance(other, (int, float)):
            return Matrix(v * other for v in self.values)
        return NotImplemented

    def __rmul__(self, other):
        if isinstance(other, (int, float)):
            return self * other
        return NotImplemented

    def __eq__(self, other) -> bool:
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.values == other.values

    def __hash__(self) -> int:
        return hash(self.values)

    def __repr__(self) -> str:
        return f"Matrix({self.values!r})"


_DEFAULT_CCM = Matrix((1.90255, -0.77478, -0.12777,
                       -0.31338, 1.88197, -0.56858,
                       -0.06001, -0.61785, 1.67786))
_RGB2XYZ = Matrix((0.4124564, 0.3575761, 0.1804375,
                   0.2126729, 0.7151522, 0.0721750,
                   0.0193339, 0.1191920, 0.9503041))

# TIFF field types
_BYTE, _ASCII, _SHORT, _LONG, _RATIONAL, _UNDEFINED, _SRATIONAL = 1, 2, 3, 4, 5, 7, 10

_TAG_SUBFILETYPE = 254
_TAG_IMAGEWIDTH = 256
_TAG_IMAGELENGTH = 257
_TAG_BITSPERSAMPLE = 258
_TAG_COMPRESSION = 259
_TAG_PHOTOMETRIC = 262
_TAG_MAKE = 271
_TAG_MODEL = 272
_TAG_STRIPOFFSETS = 273
_TAG_ORIENTATION = 274
_TAG_SAMPLESPERPIXEL = 277
_TAG_ROWSPERSTRIP = 278
_TAG_STRIPBYTECOUNTS = 279
_TAG_PLANARCONFIG = 284
_TAG_SOFTWARE = 305
_TAG_SUBIFD = 330
_TAG_CFAREPEATPATTERNDIM = 33421
_TAG_CFAPATTERN = 33422
_TAG_EXIFIFD = 34665
_TAG_DNGVERSION = 50706
_TAG_DNGBACKWARDVERSION = 50707
_TAG_UNIQUECAMERAMODEL = 50708
_TAG_BLACKLEVELREPEATDIM = 50713
_TAG_BLACKLEVEL = 50714
_TAG_WHITELEVEL = 50717
_TAG_COLORMATRIX1 = 50721
_TAG_ASSHOTNEUTRAL = 50728
_TAG_CALIBRATIONILLUMINANT1 = 50778

_EXIF_EXPOSURETIME = 33434
_EXIF_ISOSPEEDRATINGS = 34855
_EXIF_DATETIMEORIGINAL = 36867
_EXIF_SUBJECTDISTANCE = 37382

_PHOTOMETRIC_RGB = 2
_PHOTOMETRIC_CFA = 32803


def _rational(value: float, signed: bool) -> tuple[int, int]:
    limit = 0x7FFFFFFF if signed else 0xFFFFFFFF
    if math.isinf(value):
        if value < 0 and signed:
            return -limit, 1
        if value < 0:
            raise ValueError("negative value for an unsigned rational")
        return limit, 1
    if value < 0 and not signed:
        raise ValueError("negative value for an unsigned rational")
    den_limit = 1_000_000
    while True:
        frac = Fraction(value).limit_denominator(den_limit)
        if abs(frac.numerator) <= limit:
            return frac.numerator, frac.denominator
        if den_limit == 1:
            raise ValueError("value out of range for a TIFF rational")
        den_limit //= 10


_Entry = tuple[int, int, int, bytes]


def _entry(tag: int, typ: int, values: Any) -> _Entry:
    if typ == _ASCII:
        payload = values.encode() + b"\x00"
        return tag, typ, len(payload), payload
    if typ in (_BYTE, _UNDEFINED):
        payload = bytes(values)
        return tag, typ, len(payload), payload
    values = list(values)
    if typ == _SHORT:
        payload = struct.pack(f"<{len(values)}H", *values)
    elif typ == _LONG:
        payload = struct.pack(f"<{len(values)}I", *values)
    elif typ == _RATIONAL:
        payload = b"".join(struct.pack("<II", *_rational(v, False)) for v in values)
    elif typ == _SRATIONAL:
        payload = b"".join(struct.pack("<ii", *_rational(v, True)) for v in values)
    else:
        raise ValueError(f"unsupported TIFF field type {typ}")
    return tag, typ, len(values), payload


def _even(n: int) -> int:
    return n + (n & 1)


def _ifd_size(entries: list[_Entry]) -> int:
    data = sum(_even(len(p)) for _, _, _, p in entries if len(p) > 4)
    return 2 + 12 * len(entries) + 4 + data


def _ifd_bytes(entries: list[_Entry], base: int) -> bytes:
    entries = sorted(entries, key=lambda e: e[0])
    data_offset = base + 2 + 12 * len(entries) + 4
    head = bytearray(struct.pack("<H", len(entries)))
    data = bytearray()
    for tag, typ, count, payload in entries:
        if len(payload) <= 4:
            field = payload.ljust(4, b"\x00")
        else:
            field = struct.pack("<I", data_offset + len(data))
            data += payload
            if len(data) & 1:
                data += b"\x00"
        head += struct.pack("<HHI", tag, typ, count) + field
    head += struct.pack("<I", 0)
    return bytes(head + data)


def _black_levels(fmt: BayerFormat, metadata: Mapping[str, Any]) -> list[float]:
    scale = (1 << fmt.bits) / 65536.0
    levels = [4096 * scale] * 4
    sensor_levels = metadata.get("SensorBlackLevels")
    if sensor_levels is None:
        logger.warning("no black level found, using default")
        return levels
    # Levels arrive as R, Gr, Gb, B; re-order them for the actual Bayer order.
    for i in range(4):
        j = fmt.order[i]
        j = 0 if j == 0 else (3 if j == 2 else 1 + bool(fmt.order[i ^ 1]))
        levels[j] = sensor_levels[i] * scale
    return levels


def _thumbnail(pixels: array, info: StreamInfo, stride_px: int, bits: int) -> bytes:
    thumb = bytearray()
    for y in range(info.height >> 4):
        for x in range(info.width >> 4):
            off = (y * stride_px + x) << 4
            grey = (pixels[off] + pixels[off + 1]
                    + pixels[off + stride_px] + pixels[off + stride_px + 1])
            grey = ((grey << 14) & 0xFFFFFFFF) >> bits
            value = int(math.sqrt(grey)) & 0xFF  # simple gamma correction
            thumb += bytes((value, value, value))
    return bytes(thumb)


def _main_image(pixels: array, info: StreamInfo, stride_px: int) -> bytes:
    rows = array("H")
    for y in range(info.height):
        rows.extend(pixels[y * stride_px:y * stride_px + info.width])
    if sys.byteorder == "big":
        rows.byteswap()
    return rows.tobytes()


def dng_save(data, info: StreamInfo, metadata: Mapping[str, Any], filename: str, cam_model: str,
             options: Optional[StillOptions]) -> None:
    """Write a raw Bayer frame as a DNG with a greyscale thumbnail and EXIF tags."""
    fmt = BAYER_FORMATS.get(info.pixel_format)
    if fmt is None:
        raise ValueError("unsupported Bayer format")
    logger.info("Bayer format is %s", fmt.name)

    stride_px = info.width
    if fmt.compressed:
        pixels = uncompress(data, info)
        stride_px = (info.width + 7) & ~7
    elif fmt.packed:
        pixels = unpack_10bit(data, info) if fmt.bits == 10 else unpack_12bit(data, info)
    else:
        pixels = unpack_16bit(data, info)

    black_levels = _black_levels(fmt, metadata)

    exposure = metadata.get("ExposureTime")
    exp_time = 10000.0
    if exposure is not None:
        exp_time = float(exposure)
    else:
        logger.warning("default to exposure time of %sus", exp_time)
    exp_time /= 1e6

    gain = metadata.get("AnalogueGain")
    iso = 100
    if gain is not None:
        iso = int(gain * 100.0) & 0xFFFF
    else:
        logger.warning("default to ISO value of %d", iso)

    neutral = [1.0, 1.0, 1.0]
    wb_gains = Matrix.diagonal(1, 1, 1)
    colour_gains = metadata.get("ColourGains")
    if colour_gains is not None:
        neutral[0] = 1.0 / colour_gains[0]
        neutral[2] = 1.0 / colour_gains[1]
        wb_gains = Matrix.diagonal(colour_gains[0], 1, colour_gains[1])

    ccm_values = metadata.get("ColourCorrectionMatrix")
    if ccm_values is not None:
        ccm = Matrix(ccm_values)
    else:
        ccm = _DEFAULT_CCM
        logger.warning("no CCM metadata found")

    cam_xyz = (_RGB2XYZ * ccm * wb_gains).inverse()
    logger.debug("Black levels %s, exposure time %sus, ISO %d", black_levels, exp_time * 1e6, iso)
    logger.debug("Neutral %s", neutral)
    logger.debug("Cam_XYZ: %s", cam_xyz.values)

    thumb = _thumbnail(pixels, info, stride_px, fmt.bits)
    main = _main_image(pixels, info, stride_px)
    thumb_w, thumb_h = info.width >> 4, info.height >> 4
    white = (1 << fmt.bits) - 1

    thumb_offset = 8
    main_offset = thumb_offset + _even(len(thumb))
    ifd0_offset = main_offset + _even(len(main))

    def ifd0_entries(sub_offset: int, exif_offset: int) -> list[_Entry]:
        return [
            _entry(_TAG_SUBFILETYPE, _LONG, [1]),
            _entry(_TAG_IMAGEWIDTH, _LONG, [thumb_w]),
            _entry(_TAG_IMAGELENGTH, _LONG, [thumb_h]),
            _entry(_TAG_BITSPERSAMPLE, _SHORT, [8, 8, 8]),
            _entry(_TAG_COMPRESSION, _SHORT, [1]),
            _entry(_TAG_PHOTOMETRIC, _SHORT, [_PHOTOMETRIC_RGB]),
            _entry(_TAG_MAKE, _ASCII, MAKE_STRING),
            _entry(_TAG_MODEL, _ASCII, cam_model),
            _entry(_TAG_STRIPOFFSETS, _LONG, [thumb_offset]),
            _entry(_TAG_ORIENTATION, _SHORT, [1]),
            _entry(_TAG_SAMPLESPERPIXEL, _SHORT, [3]),
            _entry(_TAG_ROWSPERSTRIP, _LONG, [max(thumb_h, 1)]),
            _entry(_TAG_STRIPBYTECOUNTS, _LONG, [len(thumb)]),
            _entry(_TAG_PLANARCONFIG, _SHORT, [1]),
            _entry(_TAG_SOFTWARE, _ASCII, SOFTWARE_STRING),
            _entry(_TAG_DNGVERSION, _BYTE, [1, 1, 0, 0]),
            _entry(_TAG_DNGBACKWARDVERSION, _BYTE, [1, 0, 0, 0]),
            _entry(_TAG_UNIQUECAMERAMODEL, _ASCII, f"{MAKE_STRING} {cam_model}"),
            _entry(_TAG_COLORMATRIX1, _SRATIONAL, cam_xyz.values),
            _entry(_TAG_ASSHOTNEUTRAL, _RATIONAL, neutral),
            _entry(_TAG_CALIBRATIONILLUMINANT1, _SHORT, [21]),
            _entry(_TAG_SUBIFD, _LONG, [sub_offset]),
            _entry(_TAG_EXIFIFD, _LONG, [exif_offset]),
        ]

    sub_entries = [
        _entry(_TAG_SUBFILETYPE, _LONG, [0]),
        _entry(_TAG_IMAGEWIDTH, _LONG, [info.width]),
        _entry(_TAG_IMAGELENGTH, _LONG, [info.height]),
        _entry(_TAG_BITSPERSAMPLE, _SHORT, [16]),
        _entry(_TAG_COMPRESSION, _SHORT, [1]),
        _entry(_TAG_PHOTOMETRIC, _SHORT, [_PHOTOMETRIC_CFA]),
        _entry(_TAG_STRIPOFFSETS, _LONG, [main_offset]),
        _entry(_TAG_SAMPLESPERPIXEL, _SHORT, [1]),
        _entry(_TAG_ROWSPERSTRIP, _LONG, [max(info.height, 1)]),
        _entry(_TAG_STRIPBYTECOUNTS, _LONG, [len(main)]),
        _entry(_TAG_PLANARCONFIG, _SHORT, [1]),
        _entry(_TAG_CFAREPEATPATTERNDIM, _SHORT, [2, 2]),
        _entry(_TAG_CFAPATTERN, _BYTE, fmt.order),
        _entry(_TAG_WHITELEVEL, _LONG, [white]),
        _entry(_TAG_BLACKLEVELREPEATDIM, _SHORT, [2, 2]),
        _entry(_TAG_BLACKLEVEL, _RATIONAL, black_levels),
    ]

    exif_entries = [
        _entry(_EXIF_DATETIMEORIGINAL, _ASCII, time.strftime("%Y:%m:%d %H:%M:%S", time.localtime())),
        _entry(_EXIF_ISOSPEEDRATINGS, _SHORT, [iso]),
        _entry(_EXIF_EXPOSURETIME, _RATIONAL, [exp_time]),
    ]
    lens_position = metadata.get("LensPosition")
    if lens_position is not None:
        distance = 1.0 / lens_position if lens_position > 0.0 else math.inf
        exif_entries.append(_entry(_EXIF_SUBJECTDISTANCE, _RATIONAL, [distance]))

    sub_offset = ifd0_offset + _ifd_size(ifd0_entries(0, 0))
    exif_offset = sub_offset + _ifd_size(sub_entries)

    content = b"".join((
        b"II*\x00" + struct.pack("<I", ifd0_offset),
        thumb.ljust(_even(len(thumb)), b"\x00"),
        main.ljust(_even(len(main)), b"\x00"),
        _ifd_bytes(ifd0_entries(sub_offset, exif_offset), ifd0_offset),
        _ifd_bytes(sub_entries, sub_offset),
        _ifd_bytes(exif_entries, exif_offset),
    ))
    with open(filename, "wb") as fp:
        fp.write(content)
    logger.debug("Wrote %d bytes to DNG file", len(content))