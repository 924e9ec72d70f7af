[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "deltarelay"
version = "0.1.0"
description = "Relay Delta Exchange market data streams to websocket clients, with per-channel subscriptions and statistics."
requires-python = ">=3.10"
keywords = ["websocket", "market-data", "delta-exchange", "relay", "aiohttp", "crypto"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Intended Audience :: Developers",
    "Intended Audience :: Financial and Insurance Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Office/Business :: Financial :: Investment",
]
dependencies = [
    "aiohttp",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
deltarelay = "deltarelay.app:main"

[tool.hatch.build.targets.wheel]
packages = ["deltarelay"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
