[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "serfkit"
version = "0.1.0"
description = "Building blocks for gossip-based cluster membership: Lamport clocks, wire messages, events, queries and keyring management"
requires-python = ">=3.10"
dependencies = [
    "msgpack",
]
keywords = [
    "gossip",
    "membership",
    "cluster",
    "lamport",
    "msgpack",
    "distributed",
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
    "Topic :: System :: Distributed Computing",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["serfkit"]

[tool.hatch.build.targets.sdist]
include = [
    "serfkit",
    "tests",
]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
