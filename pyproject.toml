[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chainindex"
version = "0.4.1"
description = "Blockchain transaction and script-history indexer over an ordered key-value store"
requires-python = ">=3.10"
dependencies = []
keywords = ["blockchain", "bitcoin", "index", "database", "utxo", "key-value"]
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
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["chainindex"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
