[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cqlx"
version = "0.1.0"
description = "Dataclass row scanning and file-based schema migrations for CQL databases"
requires-python = ">=3.10"
dependencies = []
keywords = ["cql", "cassandra", "scylla", "migrations", "dataclasses", "database"]
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
    "Topic :: Database :: Front-Ends",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["cqlx"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
