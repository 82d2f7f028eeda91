import re
import struct
import sys
from array import array

import pytest
from PIL import Image

from picamio.dng import (
    BAYER_FORMATS,
    BayerFormat,
    Matrix,
    dng_save,
    uncompress,
    unpack_10bit,
    unpack_12bit,
    unpack_16bit,
)
from picamio.types import PixelFormat, StreamInfo

_SIZES = {1: 1, 2: 1, 3: 2, 4: 4, 5: 8, 7: 1, 10: 8}


def read_ifd(blob, offset):
    (count,) = struct.unpack_from("<H", blob, offset)
    tags = {}
    for i in range(count):
        entry = offset + 2 + 12 * i
        tag, typ, n = struct.unpack_from("<HHI", blob, entry)
        size = _SIZES[typ] * n
        pos = entry + 8 if size <= 4 else struct.unpack_from("<I", blob, entry + 8)[0]
        raw = blob[pos:pos + size]
        if typ == 2:
            value = raw.rstrip(b"\x00").decode()
        elif typ in (1, 7):
            value = list(raw)
        elif typ == 3:
            value = list(struct.unpack(f"<{n}H", raw))
        elif typ == 4:
            value = list(struct.unpack(f"<{n}I", raw))
        elif typ == 5:
            nums = struct.unpack(f"<{2 * n}I", raw)
            value = list(zip(nums[0::2], nums[1::2]))
        else:
            nums = struct.unpack(f"<{2 * n}i", raw)
            value = list(zip(nums[0::2], nums[1::2]))
        tags[tag] = value
    return tags


def load(path):
    blob = path.read_bytes()
    (ifd0_offset,) = struct.unpack_from("<I", blob, 4)
    ifd0 = read_ifd(blob, ifd0_offset)
    sub = read_ifd(blob, ifd0[330][0])
    exif = read_ifd(blob, ifd0[34665][0])
    return blob, ifd0, sub, exif


def pack10(values, width, height, stride):
    groups = (width + 3) // 4
    out = bytearray(stride * height)
    for y in range(height):
        row = values[y * width:(y + 1) * width] + [0] * (groups * 4 - width)
        for g in range(groups):
            quad = row[4 * g:4 * g + 4]
            base = y * stride + 5 * g
            out[base:base + 4] = bytes(v >> 2 for v in quad)
            out[base + 4] = sum((v & 3) << (2 * i) for i, v in enumerate(quad))
    return bytes(out)


def pack12(values, width, height, stride):
    groups = (width + 1) // 2
    out = bytearray(stride * height)
    for y in range(height):
        row = values[y * width:(y + 1) * width] + [0] * (groups * 2 - width)
        for g in range(groups):
            a, b = row[2 * g:2 * g + 2]
            base = y * stride + 3 * g
            out[base:base + 3] = bytes((a >> 4, b >> 4, (a & 15) | ((b & 15) << 4)))
    return bytes(out)


def raw16(values, width, height, stride):
    out = bytearray(stride * height)
    for y in range(height):
        row = array("H", values[y * width:(y + 1) * width]).tobytes()
        out[y * stride:y * stride + len(row)] = row
    return bytes(out)


def samples(count, modulo):
    return [(i * 37 + 11) % modulo for i in range(count)]


@pytest.mark.parametrize("width", [8, 6, 5])
def test_unpack_10bit_round_trip(width):
    values = samples(width * 3, 1024)
    info = StreamInfo(width, 3, 16, PixelFormat.SRGGB10_CSI2P)
    assert list(unpack_10bit(pack10(values, width, 3, 16), info)) == values


@pytest.mark.parametrize("width", [4, 5])
def test_unpack_12bit_round_trip(width):
    values = samples(width * 2, 4096)
    info = StreamInfo(width, 2, 12, PixelFormat.SRGGB12_CSI2P)
    assert list(unpack_12bit(pack12(values, width, 2, 12), info)) == values


def test_unpack_16bit_skips_row_padding():
    values = samples(12, 65536)
    info = StreamInfo(4, 3, 12, PixelFormat.SRGGB16)
    assert list(unpack_16bit(raw16(values, 4, 3, 12), info)) == values


def test_unpack_accepts_plane_list():
    values = samples(8, 1024)
    info = StreamInfo(8, 1, 10, PixelFormat.SRGGB10_CSI2P)
    assert list(unpack_10bit([pack10(values, 8, 1, 10)], info)) == values


def test_unpack_short_data_raises():
    info = StreamInfo(8, 2, 10, PixelFormat.SRGGB10_CSI2P)
    with pytest.raises(ValueError):
        unpack_10bit(bytes(12), info)


def test_uncompress_zero_block():
    info = StreamInfo(8, 1, 8, PixelFormat.RGGB_PISP_COMP1)
    assert list(uncompress(bytes(8), info)) == [2048, 2048, 3072, 3072, 2048, 2048, 2048, 2048]


def test_uncompress_pads_rows_to_eight_pixels():
    info = StreamInfo(12, 3, 16, PixelFormat.RGGB_PISP_COMP1)
    data = bytes((i * 91 + 7) & 0xFF for i in range(16 * 3))
    out = uncompress(data, info)
    assert len(out) == 16 * 3
    assert all(2048 <= v <= 0xFFFF for v in out)


def test_uncompress_short_data_raises():
    info = StreamInfo(8, 2, 8, PixelFormat.RGGB_PISP_COMP1)
    with pytest.raises(ValueError):
        uncompress(bytes(10), info)


def test_bayer_format_table():
    fmt = BAYER_FORMATS[PixelFormat.SGRBG12_CSI2P]
    assert fmt == BayerFormat("GRBG-12", 12, (1, 0, 2, 1), True, False)
    assert BAYER_FORMATS[PixelFormat.BGGR_PISP_COMP1].compressed


CCM = Matrix((1.90255, -0.77478, -0.12777,
              -0.31338, 1.88197, -0.56858,
              -0.06001, -0.61785, 1.67786))
IDENTITY = Matrix.diagonal(1, 1, 1)
IDENTITY_VALUES = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0)


def test_matrix_identity_inverse():
    assert IDENTITY.inverse() == IDENTITY


def test_matrix_inverse_product_is_identity():
    right = CCM * CCM.inverse()
    left = CCM.inverse() * CCM
    assert right.values == pytest.approx(IDENTITY_VALUES, abs=1e-9)
    assert left.values == pytest.approx(IDENTITY_VALUES, abs=1e-9)


def test_matrix_transpose_twice():
    assert CCM.transpose().transpose() == CCM
    assert CCM.transpose().values[1] == CCM.values[3]


def test_matrix_adjugate_relation():
    product = CCM.adjugate() * CCM
    det = CCM.determinant()
    expected = tuple(v * det for v in IDENTITY_VALUES)
    assert product.values == pytest.approx(expected, abs=1e-9)


def test_matrix_determinant_multiplicative():
    other = Matrix((2, 1, 0, 0, 3, 1, 1, 0, 4))
    assert (CCM * other).determinant() == pytest.approx(CCM.determinant() * other.determinant())


def test_matrix_diagonal_determinant():
    assert Matrix.diagonal(2, 3, 4).determinant() == pytest.approx(24)


def test_matrix_scalar_multiplication():
    assert (CCM * 2.0).values == tuple(v * 2.0 for v in CCM.values)
    assert 2.0 * CCM == CCM * 2.0


def test_matrix_singular_inverse_raises():
    with pytest.raises(ValueError):
        Matrix((1, 2, 3, 2, 4, 6, 0, 0, 1)).inverse()


def test_matrix_wrong_size_raises():
    with pytest.raises(ValueError):
        Matrix((1, 2, 3))


def save16(tmp_path, value=1000, metadata=None, fmt=PixelFormat.SRGGB16):
    values = [value] * (64 * 32)
    info = StreamInfo(64, 32, 128, fmt)
    path = tmp_path / "frame.dng"
    dng_save(raw16(values, 64, 32, 128), info, metadata or {}, str(path), "testcam", None)
    return path


def test_dng_first_ifd_identifies_camera(tmp_path):
    blob, ifd0, _, _ = load(save16(tmp_path))
    assert blob[:4] == b"II*\x00"
    assert ifd0[271] == "Raspberry Pi"
    assert ifd0[272] == "testcam"
    assert ifd0[50708] == "Raspberry Pi testcam"
    assert ifd0[50706] == [1, 1, 0, 0]
    assert ifd0[50778] == [21]


def test_dng_raw_ifd(tmp_path):
    blob, _, sub, _ = load(save16(tmp_path))
    assert sub[256] == [64] and sub[257] == [32]
    assert sub[258] == [16]
    assert sub[262] == [32803]
    assert sub[33422] == [0, 1, 1, 2]
    assert sub[50717] == [0xFFFF]
    assert [n / d for n, d in sub[50714]] == [4096.0] * 4


def test_dng_raw_strip_round_trip(tmp_path):
    values = samples(64 * 32, 1024)
    info = StreamInfo(64, 32, 80, PixelFormat.SBGGR10_CSI2P)
    path = tmp_path / "packed.dng"
    dng_save(pack10(values, 64, 32, 80), info, {}, str(path), "testcam", None)
    blob, _, sub, _ = load(path)
    start, length = sub[273][0], sub[279][0]
    strip = array("H", blob[start:start + length])
    if sys.byteorder == "big":
        strip.byteswap()
    assert list(strip) == values
    assert sub[50717] == [(1 << 10) - 1]
    assert sub[33422] == [2, 1, 1, 0]


def test_dng_black_levels_from_metadata(tmp_path):
    _, _, sub, _ = load(save16(tmp_path, metadata={"SensorBlackLevels": [1000, 2000, 3000, 4000]}))
    assert [n / d for n, d in sub[50714]] == [1000.0, 2000.0, 3000.0, 4000.0]


def test_dng_exif_tags(tmp_path):
    metadata = {"ExposureTime": 20000, "AnalogueGain": 1.0, "LensPosition": 2.0}
    _, _, _, exif = load(save16(tmp_path, metadata=metadata))
    (num, den), = exif[33434]
    assert num / den == pytest.approx(20000 / 1e6)
    assert exif[34855] == [100]
    (dnum, dden), = exif[37382]
    assert dnum / dden == pytest.approx(1 / 2.0)
    assert re.fullmatch(r"\d{4}:\d\d:\d\d \d\d:\d\d:\d\d", exif[36867])


def test_dng_infinite_subject_distance(tmp_path):
    _, _, _, exif = load(save16(tmp_path, metadata={"LensPosition": 0.0}))
    assert exif[37382] == [(0xFFFFFFFF, 1)]


def test_dng_neutral_from_colour_gains(tmp_path):
    _, ifd0, _, _ = load(save16(tmp_path, metadata={"ColourGains": [2.0, 0.5]}))
    assert [n / d for n, d in ifd0[50728]] == pytest.approx([1 / 2.0, 1.0, 1 / 0.5])


def test_dng_ifd_tags_sorted(tmp_path):
    blob, _, _, _ = load(save16(tmp_path))
    (offset,) = struct.unpack_from("<I", blob, 4)
    (count,) = struct.unpack_from("<H", blob, offset)
    tags = [struct.unpack_from("<H", blob, offset + 2 + 12 * i)[0] for i in range(count)]
    assert tags == sorted(tags)


def test_dng_thumbnail_is_grey_and_tracks_brightness(tmp_path):
    dark_dir = tmp_path / "dark"
    bright_dir = tmp_path / "bright"
    dark_dir.mkdir()
    bright_dir.mkdir()
    with Image.open(save16(dark_dir, value=1000)) as dark, Image.open(save16(bright_dir, value=40000)) as bright:
        assert dark.size == (64 >> 4, 32 >> 4)
        assert dark.mode == "RGB"
        r, g, b = dark.getpixel((0, 0))
        assert r == g == b
        assert bright.getpixel((0, 0))[0] > r


def test_dng_unsupported_format(tmp_path):
    info = StreamInfo(64, 32, 192, PixelFormat.RGB888)
    with pytest.raises(ValueError, match="unsupported Bayer format"):
        dng_save(bytes(192 * 32), info, {}, str(tmp_path / "x.dng"), "testcam", None)
    assert not (tmp_path / "x.dng").exists()