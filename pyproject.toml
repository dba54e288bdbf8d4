[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gossip"
version = "0.1.0"
description = "Cluster membership building blocks: hybrid logical clocks, node metadata, node lists and groups, message history, framed streams and leader election."
requires-python = ">=3.10"
dependencies = []
keywords = ["gossip", "cluster", "membership", "hlc", "leader-election", "distributed"]
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
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["gossip"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
