"""Stream descriptions and option sets shared by encoders, outputs and image writers."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional


class PixelFormat(enum.Enum):
    """Pixel layouts that frames handed to the package may use."""

    YUV420 = "YUV420"
    YUYV = "YUYV"
    RGB888 = "RGB888"
    BGR888 = "BGR888"
    RGB161616 = "RGB161616"
    BGR161616 = "BGR161616"

    SRGGB10_CSI2P = "SRGGB10_CSI2P"
    SGRBG10_CSI2P = "SGRBG10_CSI2P"
    SBGGR10_CSI2P = "SBGGR10_CSI2P"
    SGBRG10_CSI2P = "SGBRG10_CSI2P"
    SRGGB10 = "SRGGB10"
    SGRBG10 = "SGRBG10"
    SBGGR10 = "SBGGR10"
    SGBRG10 = "SGBRG10"
    SRGGB12_CSI2P = "SRGGB12_CSI2P"
    SGRBG12_CSI2P = "SGRBG12_CSI2P"
    SBGGR12_CSI2P = "SBGGR12_CSI2P"
    SGBRG12_CSI2P = "SGBRG12_CSI2P"
    SRGGB12 = "SRGGB12"
    SGRBG12 = "SGRBG12"
    SBGGR12 = "SBGGR12"
    SGBRG12 = "SGBRG12"
    SRGGB16 = "SRGGB16"
    SGRBG16 = "SGRBG16"
    SBGGR16 = "SBGGR16"
    SGBRG16 = "SGBRG16"
    R10_CSI2P = "R10_CSI2P"
    R10 = "R10"
    R12 = "R12"
    RGGB_PISP_COMP1 = "RGGB_PISP_COMP1"
    GRBG_PISP_COMP1 = "GRBG_PISP_COMP1"
    GBRG_PISP_COMP1 = "GBRG_PISP_COMP1"
    BGGR_PISP_COMP1 = "BGGR_PISP_COMP1"


@dataclass(frozen=True)
class StreamInfo:
    """Geometry and format of the frames in one camera stream."""

    width: int
    height: int
    stride: int
    pixel_format: Optional[PixelFormat] = None
    colour_space: Optional[str] = None

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0 or self.stride < 0:
            raise ValueError("stream dimensions must not be negative")


_METADATA_FORMATS = ("json", "txt")


@dataclass
class VideoOptions:
    """Settings that control video encoding and where its output goes."""

    output: str = ""
    codec: str = "h264"
    platform: str = "vc4"
    circular: int = 0
    segment: int = 0
    split: bool = False
    wrap: int = 0
    flush: bool = False
    save_pts: str = ""
    metadata: str = ""
    metadata_format: str = "json"
    pause: bool = False
    listen: bool = False
    width: int = 0
    height: int = 0
    framerate: Optional[float] = None
    quality: int = 50
    bitrate: int = 0
    profile: str = ""
    level: str = ""
    intra: int = 0
    inline_headers: bool = False
    libav_video_codec: str = "h264_v4l2m2m"
    verbose: int = 1

    def __post_init__(self) -> None:
        if self.metadata_format not in _METADATA_FORMATS:
            raise ValueError(f"unsupported metadata format {self.metadata_format!r}")
        if self.circular < 0 or self.segment < 0 or self.wrap < 0:
            raise ValueError("circular, segment and wrap must not be negative")


@dataclass
class StillOptions:
    """Settings that control how still images are written."""

    output: str = ""
    encoding: str = "jpg"
    quality: int = 93
    restart: int = 0
    thumb_width: int = 320
    thumb_height: int = 240
    thumb_quality: int = 70
    exif: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.thumb_width < 0 or self.thumb_height < 0 or self.thumb_quality < 0:
            raise ValueError("thumbnail settings must not be negative")