[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tunoffload"
version = "0.1.0"
description = "TUN device interface with TCP receive coalescing and segmentation for virtio-net framed packet buffers"
requires-python = ">=3.10"
dependencies = []
keywords = ["tun", "gro", "tso", "virtio", "tcp", "checksum", "offload"]
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
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["tunoffload"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
