[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "zfspv"
version = "0.1.0"
description = "Reconciling controllers and CSI response builders for ZFS-backed local persistent volumes"
requires-python = ">=3.10"
dependencies = []
keywords = ["zfs", "csi", "storage", "persistent-volume", "controller", "snapshot", "backup", "restore"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["zfspv"]

[tool.hatch.build.targets.sdist]
include = ["zfspv", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
