[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "evmworker"
version = "0.1.0"
description = "Worker-side runtime for an event-driven entity platform: worker registration, event routing, rule engines and SQLite schema migration"
requires-python = ">=3.10"
dependencies = []
keywords = ["worker", "event", "gateway", "rule-engine", "schema", "sqlite"]
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["evmworker"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
