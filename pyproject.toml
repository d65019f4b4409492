[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "polyspi"
version = "0.1.0"
description = "Host side of a JSON-RPC plugin interface: one-line framing, safe paths, isolation profiles, process supervision, bounded worker pools and response memoization."
requires-python = ">=3.10"
keywords = ["json-rpc", "plugin", "sandbox", "subprocess", "memoization", "process-pool"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["polyspi"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
strict = true
