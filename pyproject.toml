[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tgcodebot"
version = "0.1.0"
description = "Telegram bot that runs Claude Code and GitHub CLI coding sessions inside Docker containers"
requires-python = ">=3.11"
dependencies = [
    "aiohttp",
]
keywords = ["telegram", "bot", "docker", "claude", "github", "coding-session"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Chat",
    "Topic :: Software Development",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
tgcodebot = "tgcodebot.bot:main"

[tool.hatch.build.targets.wheel]
packages = ["tgcodebot"]

[tool.hatch.build.targets.sdist]
include = ["tgcodebot", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
