[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bundlerelay"
version = "0.1.0"
description = "Asyncio packet and bundle relay hub with blacklist filtering, front-run detection and DEX instruction decoding"
requires-python = ">=3.10"
keywords = [
    "relay",
    "bundles",
    "packets",
    "transactions",
    "base58",
    "redis",
    "clickhouse",
    "prometheus",
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
    "Topic :: Internet",
    "Topic :: System :: Networking",
]
dependencies = [
    "redis>=5.0",
    "aiohttp>=3.9",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.23",
]

[tool.hatch.build.targets.wheel]
packages = ["bundlerelay"]

[tool.hatch.build.targets.sdist]
include = ["bundlerelay", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
