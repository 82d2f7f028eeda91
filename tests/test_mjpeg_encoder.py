import io

import pytest
from PIL import Image

from picamio.mjpeg_encoder import MjpegEncoder
from picamio.types import StreamInfo, VideoOptions

WIDTH, HEIGHT = 32, 16
INFO = StreamInfo(WIDTH, HEIGHT, WIDTH)


def _frame(y_value):
    return bytes([y_value]) * (WIDTH * HEIGHT) + bytes([128]) * (WIDTH * HEIGHT // 2)


def test_frames_are_jpegs_in_order():
    outputs = []
    with MjpegEncoder(VideoOptions(codec="mjpeg", quality=90)) as enc:
        enc.set_output_ready_callback(lambda data, ts, key: outputs.append((data, ts, key)))
        for n in range(12):
            enc.encode_buffer(_frame(100), INFO, 40 * n)
    assert [ts for _, ts, _ in outputs] == [40 * n for n in range(12)]
    assert all(key for _, _, key in outputs)
    assert all(data[:2] == b"\xff\xd8" for data, _, _ in outputs)


def test_output_decodes_to_frame():
    outputs = []
    with MjpegEncoder(VideoOptions(quality=95)) as enc:
        enc.set_output_ready_callback(lambda data, ts, key: outputs.append(data))
        enc.encode_buffer(_frame(128), INFO, 0)
    assert len(outputs) == 1
    image = Image.open(io.BytesIO(outputs[0]))
    assert image.size == (WIDTH, HEIGHT)
    r, g, b = image.convert("RGB").getpixel((WIDTH // 2, HEIGHT // 2))
    assert max(abs(r - 128), abs(g - 128), abs(b - 128)) <= 3


def test_input_done_called_per_frame():
    done = []
    with MjpegEncoder(VideoOptions()) as enc:
        enc.set_input_done_callback(lambda: done.append(1))
        for n in range(5):
            enc.encode_buffer(_frame(50), INFO, n)
    assert len(done) == 5


def test_bad_frame_reported_on_close_and_others_kept():
    outputs = []
    enc = MjpegEncoder(VideoOptions())
    enc.set_output_ready_callback(lambda data, ts, key: outputs.append(ts))
    enc.encode_buffer(b"", INFO, 1)
    enc.encode_buffer(_frame(60), INFO, 2)
    with pytest.raises(ValueError):
        enc.close()
    assert outputs == [2]


def test_encode_after_close_rejected():
    enc = MjpegEncoder(VideoOptions())
    enc.close()
    with pytest.raises(ValueError):
        enc.encode_buffer(_frame(10), INFO, 0)