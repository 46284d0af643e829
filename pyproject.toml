[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gofka"
version = "0.1.0"
description = "Building blocks of a Kafka-style message system: a Raft metadata controller, consumer groups, follower replication and a live cluster visualizer"
requires-python = ">=3.10"
keywords = ["kafka", "raft", "consensus", "consumer-group", "replication", "distributed"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "pyyaml>=6.0",
    "aiohttp>=3.9",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[project.scripts]
gofka-visualizer = "gofka.visualizer.web:main"

[tool.hatch.build.targets.wheel]
packages = ["gofka"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
