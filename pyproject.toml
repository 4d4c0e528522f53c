[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "siptx"
version = "0.1.0"
description = "SIP transaction layer (RFC 3261) with client and server transaction state machines and mockable timers"
requires-python = ">=3.10"
dependencies = []
keywords = ["sip", "voip", "rfc3261", "transaction", "telephony"]
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
    "Topic :: Communications :: Internet Phone",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["siptx"]

[tool.pytest.ini_options]
addopts = "-ra"
