# picamio

Building blocks for handling frames that come from a camera:

- still-image writers for JPEG (with EXIF and a thumbnail), DNG, BMP and PNG
- video encoders: a pass-through encoder and a multi-threaded MJPEG encoder
- stream outputs that write encoded frames to files or keep them in an in-memory circular buffer

## Installation

```
pip install picamio
```

## Describing frames

Every writer and encoder takes a `StreamInfo` (`width`, `height`, `stride`, `pixel_format`) from
`picamio.types`. The pixel format is a member of `PixelFormat`. Behaviour is set through
`StillOptions` for still images and `VideoOptions` for video, both in `picamio.types`.

## Saving still images

```python
from picamio.jpeg import jpeg_save
from picamio.types import PixelFormat, StillOptions, StreamInfo

info = StreamInfo(width=640, height=480, stride=640, pixel_format=PixelFormat.YUV420)
options = StillOptions(quality=90)
jpeg_save(frame_bytes, info, {"ExposureTime": 10000}, "image.jpg", "cam", options)
```

| Function | Module | Accepted pixel format |
| --- | --- | --- |
| `jpeg_save(data, info, metadata, filename, cam_model, options)` | `picamio.jpeg` | `YUV420`, `YUYV` |
| `bmp_save(data, info, filename, options)` | `picamio.bmp` | `RGB888` |
| `png_save(data, info, filename, options)` | `picamio.png` | `BGR888` |
| `dng_save(data, info, metadata, filename, cam_model, options)` | `picamio.dng` | the raw Bayer formats |

`jpeg_save`, `bmp_save` and `png_save` send the image to standard output when the file name is
`-`. `dng_save` always writes to the named file.

The `data` argument is a bytes-like frame or a one-item list holding it. Each `jpeg_save` call
needs an even width and height. `metadata` is a mapping from control name to value. `jpeg_save`
reads `ExposureTime`, `AnalogueGain`, `DigitalGain` and `LensPosition` from it. `dng_save` also
reads `SensorBlackLevels`, `ColourGains` and `ColourCorrectionMatrix`.

### JPEG and EXIF

`jpeg_save` puts an EXIF block at the start of the file. When `StillOptions.thumb_quality` is
non-zero, it also embeds a thumbnail of `thumb_width` x `thumb_height`. If the thumbnail comes out
too large, its quality is lowered in steps of 5.

To add tags, put entries in `StillOptions.exif` written as `IFD.TagName=value`. Separate several
values with commas. Valid IFD names are `EXIF`, `IFD0`, `IFD1`, `EINT` and `GPS`.

```python
StillOptions(exif=["EXIF.FocalLength=4/1", "IFD0.Artist=someone"])
```

Other functions in `picamio.jpeg`:

- `ExifData` builds EXIF data directly, with `set_entry`, `read_tag` and `to_bytes`.
- `yuv_to_jpeg` encodes a YUV frame as a bare JPEG, scaled to any size.
- `create_exif_data` returns the EXIF block and the thumbnail.

### DNG

`picamio.dng` decodes raw frames into 16-bit samples with these functions:

- `unpack_10bit` and `unpack_12bit` for packed formats
- `unpack_16bit` for unpacked formats
- `uncompress` for PiSP-compressed formats

`BayerFormat` describes each raw format. `Matrix` is the 3x3 matrix type behind the colour matrix
written to the file.

## Encoding video

```python
from picamio.encoder_factory import create_encoder
from picamio.file_output import FileOutput
from picamio.types import VideoOptions

options = VideoOptions(codec="mjpeg", output="video.mjpeg")
with FileOutput(options) as output, create_encoder(options, info) as encoder:
    encoder.set_input_done_callback(lambda: None)
    encoder.set_output_ready_callback(output.output_ready)
    encoder.encode_buffer(frame_bytes, info, timestamp_us=0)
```

`create_encoder` picks an encoder from `options.codec`, ignoring case:

- `yuv420` gives `NullEncoder`. It hands every frame back unchanged and marks it as a keyframe.
- `mjpeg` gives `MjpegEncoder`. It encodes frames as planar YUV420 JPEGs on four threads at
  `options.quality`, and returns them in the order they came in.

Encoders run callbacks from their own threads:

- The input-done callback is called with no arguments once a frame has been dealt with.
- The output-ready callback receives `(data, timestamp_us, keyframe)`.

`close()` waits for all queued frames. It then raises the first error that a callback or encode
step met.

## Outputs

`picamio.output.Output` is the base class. On its own it discards frames. It handles these
features, which its subclasses share:

- **Pausing.** `pause` in the options starts output disabled, and `signal()` toggles it. After a
  pause, output resumes at the next keyframe, and timestamps carry on without a gap.
- **Timestamps.** `save_pts` names a file that receives the timestamps in timecode format v2.
- **Metadata.** `metadata` names a file, or `-` for standard output, that receives per-frame
  metadata in `json` or `txt` (`metadata_format`). Queue metadata with `metadata_ready()`; it is
  written with the next frame that is output.

The subclasses are:

- `picamio.file_output.FileOutput` writes frames to `options.output`, or to standard output for
  `-`. The name may hold a `%d`-style field, which makes numbered files possible:
  - `segment` starts a new file at the first keyframe after that many milliseconds.
  - `split` starts a new file each time output restarts.
  - `wrap` makes the file number wrap around.
  - `flush` flushes after every write.
- `picamio.circular_output.CircularOutput` keeps frames in a ring buffer of `circular` megabytes
  (`picamio.circular_buffer.CircularBuffer`). When closed, it writes what it holds, starting at
  the first keyframe.

All outputs are context managers.

## What is not included

- **No H.264 encoding.** `create_encoder` raises `RuntimeError` for the `h264` codec.
- **No network output.** Frames cannot be sent to a UDP or TCP address.
- **No output factory.** Outputs are constructed directly.
- **No raw writer.** Uncompressed YUV/RGB still images cannot be saved.
- **No camera access.** The package captures nothing and offers no command-line program. It works
  only on frames it is given.