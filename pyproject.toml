[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "picamio"
version = "0.1.0"
description = "Still-image writers, video encoders and stream outputs for camera frame buffers"
requires-python = ">=3.10"
dependencies = [
    "pillow",
]
keywords = ["camera", "jpeg", "mjpeg", "dng", "bmp", "png", "exif", "video", "circular buffer"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Graphics :: Capture :: Digital Camera",
    "Topic :: Multimedia :: Video",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pillow",
]

[tool.hatch.build.targets.wheel]
packages = ["picamio"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
