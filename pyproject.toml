[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "blktools"
version = "0.1.0"
description = "Block-layer I/O trace decoding, recording and replay tools"
requires-python = ">=3.10"
dependencies = []
keywords = ["blktrace", "block", "io", "trace", "replay", "benchmark"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Benchmark",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
btrecord = "blktools.recorder:main"
btreplay = "blktools.replayer:main"

[tool.hatch.build.targets.wheel]
packages = ["blktools"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
