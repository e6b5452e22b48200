[build-system]
requires = ["setuptools>=61.0"]
build-backend = "setuptools.build_meta"

[project]
name = "eventstore"
version = "0.1.0"
description = "An append-only event store with idempotent batched producers, paginated consumers and optional anonymisation of users and sources"
requires-python = ">=3.10"
dependencies = [
    "msgpack",
]
keywords = ["events", "event-store", "analytics", "batching", "idempotency", "anonymization"]
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
    "Topic :: Database",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.setuptools.packages.find]
include = ["eventstore*"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
