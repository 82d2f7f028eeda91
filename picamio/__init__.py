"""Still-image writers, video encoders and stream outputs for camera frame buffers."""

__version__ = "0.1.0"