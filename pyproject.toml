[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wgtunnel"
version = "0.1.0"
description = "Building blocks for a userspace WireGuard-style tunnel: replay filtering, rate limiting, TAI64N timestamps, transport sealing and the UAPI configuration protocol."
requires-python = ">=3.10"
keywords = ["wireguard", "vpn", "tunnel", "uapi", "networking", "chacha20poly1305"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Security :: Cryptography",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["wgtunnel"]

[tool.hatch.build.targets.sdist]
include = ["wgtunnel", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
