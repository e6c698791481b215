[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mnemos"
version = "0.1.0"
description = "A small asyncio kernel core with bounded channels, byte ring queues, a driver registry, a serial multiplexer, a desktop simulator and host-side serial tools"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "kernel",
    "async",
    "asyncio",
    "channels",
    "ring-buffer",
    "serial",
    "multiplexer",
    "cobs",
    "simulator",
]
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
    "Framework :: AsyncIO",
    "Topic :: System :: Operating System Kernels",
    "Topic :: System :: Emulators",
    "Topic :: Software Development :: Embedded Systems",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
mnemos-melpomene = "mnemos.melpomene:main"
mnemos-crowtty = "mnemos.crowtty:main"
mnemos-dumbloader = "mnemos.dumbloader:main"

[tool.hatch.build.targets.wheel]
packages = ["mnemos"]

[tool.hatch.build.targets.sdist]
include = [
    "mnemos",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"
