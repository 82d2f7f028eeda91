from pathlib import Path

import pytest

from picamio.file_output import FileOutput
from picamio.types import VideoOptions


def test_single_file_receives_all_frames(tmp_path):
    path = tmp_path / "video.h264"
    with FileOutput(VideoOptions(output=str(path))) as out:
        out.output_ready(b"AA", 0, True)
        out.output_ready(b"BB", 1000, False)
        out.output_ready(b"CC", 2000, True)
    assert path.read_bytes() == b"AABBCC"


def test_frames_before_first_keyframe_are_dropped(tmp_path):
    path = tmp_path / "video.h264"
    with FileOutput(VideoOptions(output=str(path))) as out:
        out.output_ready(b"xx", 0, False)
        out.output_ready(b"K", 1000, True)
    assert path.read_bytes() == b"K"


def test_segments_split_on_keyframe_after_duration(tmp_path):
    pattern = str(tmp_path / "seg%02d.bin")
    first, second, third = b"A", b"B", b"C"
    with FileOutput(VideoOptions(output=pattern, segment=1000)) as out:
        out.output_ready(first, 0, True)
        out.output_ready(second, 500_000, False)
        out.output_ready(third, 1_500_000, True)
    assert Path(pattern % 0).read_bytes() == first + second
    assert Path(pattern % 1).read_bytes() == third


def test_wrap_reuses_file_names(tmp_path):
    pattern = str(tmp_path / "seg%02d.bin")
    first, second, third = b"A", b"B", b"C"
    with FileOutput(VideoOptions(output=pattern, segment=1000, wrap=2)) as out:
        out.output_ready(first, 0, True)
        out.output_ready(second, 1_500_000, True)
        out.output_ready(third, 3_000_000, True)
    assert Path(pattern % 0).read_bytes() == third
    assert Path(pattern % 1).read_bytes() == second
    assert not Path(pattern % 2).exists()


def test_split_opens_new_file_on_restart(tmp_path):
    pattern = str(tmp_path / "part%d.bin")
    first, paused, third = b"A", b"B", b"C"
    with FileOutput(VideoOptions(output=pattern, split=True)) as out:
        out.output_ready(first, 0, True)
        out.signal()
        out.output_ready(paused, 1000, True)
        out.signal()
        out.output_ready(third, 2000, True)
    assert Path(pattern % 0).read_bytes() == first
    assert Path(pattern % 1).read_bytes() == third


def test_unopenable_file_raises(tmp_path):
    path = tmp_path / "missing" / "video.h264"
    out = FileOutput(VideoOptions(output=str(path)))
    with pytest.raises(OSError):
        out.output_ready(b"A", 0, True)
    out.close()