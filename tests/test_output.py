import io
from fractions import Fraction

from picamio.output import (
    Flag,
    Output,
    start_metadata_output,
    stop_metadata_output,
    write_metadata,
)
from picamio.types import VideoOptions


def test_flags_combine():
    combined = Flag(Flag.KEYFRAME.value | Flag.RESTART.value)
    assert combined == Flag.KEYFRAME | Flag.RESTART
    assert combined & Flag.KEYFRAME
    assert combined & Flag.RESTART
    assert not Flag(0) & Flag.KEYFRAME
    assert Flag(0) == Flag.NONE


def test_json_start_and_stop():
    stream = io.StringIO()
    start_metadata_output(stream, "json")
    stop_metadata_output(stream, "json")
    assert stream.getvalue() == "[\n\n]\n"


def test_txt_start_and_stop_write_nothing():
    stream = io.StringIO()
    start_metadata_output(stream, "txt")
    stop_metadata_output(stream, "txt")
    assert stream.getvalue() == ""


def test_write_metadata_txt():
    stream = io.StringIO()
    write_metadata(stream, "txt", {"ExposureTime": 100, "Lux": 2.5}, True)
    assert stream.getvalue() == "ExposureTime=100\nLux=2.5\n\n"


def test_write_metadata_json_first_and_following():
    stream = io.StringIO()
    write_metadata(stream, "json", {"A": 1, "B": 2}, True)
    first = stream.getvalue()
    assert first == '{\n    "A": 1,\n    "B": 2\n}'
    write_metadata(stream, "json", {"A": 3}, False)
    assert stream.getvalue()[len(first):] == ',\n{\n    "A": 3\n}'


def test_write_metadata_json_quotes_values_with_slash():
    stream = io.StringIO()
    write_metadata(stream, "json", {"Ratio": Fraction(1, 2)}, True)
    assert '"Ratio": "1/2"' in stream.getvalue()


def test_timestamps_follow_keyframe_and_pause_logic(tmp_path):
    pts = tmp_path / "pts.txt"
    out = Output(VideoOptions(save_pts=str(pts)))
    out.output_ready(b"", 5000, False)
    out.output_ready(b"", 10000, True)
    out.output_ready(b"", 12500, False)
    out.signal()
    out.output_ready(b"", 20000, True)
    out.signal()
    out.output_ready(b"", 30000, False)
    out.output_ready(b"", 31000, True)
    out.close()
    assert pts.read_text() == "# timecode format v2\n0.000\n2.500\n2.500\n"


def test_paused_output_records_nothing_until_signalled(tmp_path):
    pts = tmp_path / "pts.txt"
    with Output(VideoOptions(save_pts=str(pts), pause=True)) as out:
        out.output_ready(b"", 0, True)
        out.output_ready(b"", 1000, True)
    assert pts.read_text().splitlines() == ["# timecode format v2"]


def test_metadata_written_to_file_as_json(tmp_path):
    path = tmp_path / "meta.json"
    with Output(VideoOptions(metadata=str(path), metadata_format="json")) as out:
        out.metadata_ready({"a": 1})
        out.output_ready(b"", 0, True)
        out.metadata_ready({"a": 2})
        out.output_ready(b"", 100, False)
    assert path.read_text() == '[\n{\n    "a": 1\n},\n{\n    "a": 2\n}\n]\n'


def test_close_is_idempotent(tmp_path):
    path = tmp_path / "meta.txt"
    out = Output(VideoOptions(metadata=str(path), metadata_format="txt"))
    out.metadata_ready({"x": 7})
    out.output_ready(b"", 0, True)
    out.close()
    out.close()
    assert path.read_text() == "x=7\n\n"