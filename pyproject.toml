[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "merino"
version = "0.1.4"
description = "A SOCKS5 proxy server built on asyncio"
requires-python = ">=3.10"
dependencies = []
keywords = ["socks", "socks5", "proxy", "asyncio", "network"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Framework :: AsyncIO",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
]

[project.optional-dependencies]
test = ["pytest", "pytest-asyncio"]

[project.scripts]
merino = "merino.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["merino"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"
