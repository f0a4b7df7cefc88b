[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chunkmaster"
version = "0.1.0"
description = "Metadata building blocks for a chunk-based distributed file system: namespace, inodes, extended attributes, leases, heartbeats and garbage collection"
requires-python = ">=3.10"
keywords = ["distributed file system", "metadata", "chunks", "leases", "garbage collection"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "sortedcontainers",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["chunkmaster"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
