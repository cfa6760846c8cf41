[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mvpages"
version = "0.1.0"
description = "Async client for a multi-version, page-addressed database store, with an SQLite-style file connection layer and an in-memory filesystem model"
requires-python = ">=3.10"
keywords = [
    "sqlite",
    "mvcc",
    "transactions",
    "pages",
    "vfs",
    "fuse",
    "msgpack",
    "asyncio",
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
    "Topic :: Database :: Front-Ends",
]
dependencies = [
    "httpx>=0.24",
    "msgpack>=1.0",
    "zstandard>=0.21",
    "cachetools>=5.3",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.21",
    "respx>=0.20",
]

[tool.hatch.build.targets.wheel]
packages = ["mvpages"]

[tool.hatch.build.targets.sdist]
include = ["mvpages", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
