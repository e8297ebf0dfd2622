[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "peerswap"
version = "0.2.0"
description = "Swap support code and a regtest harness for Bitcoin, Liquid and c-lightning daemons"
requires-python = ">=3.10"
dependencies = []
keywords = ["lightning", "bitcoin", "liquid", "regtest", "swap", "testing"]
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
    "Topic :: Software Development :: Testing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["peerswap"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
