[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "txmanager"
version = "0.1.0"
description = "Transaction policy engines, event stream management and transaction queries for blockchain transaction managers"
requires-python = ">=3.10"
dependencies = []
keywords = ["blockchain", "transactions", "policy-engine", "gas-oracle", "event-streams"]
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
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["txmanager"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
