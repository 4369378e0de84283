[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "labsys"
version = "0.1.0"
description = "Building blocks for distributed-systems exercises: a simulated RPC network, a versioned key/value server, a lock and a small MapReduce."
requires-python = ">=3.10"
dependencies = []
keywords = ["distributed systems", "mapreduce", "rpc", "key-value", "lock"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Education",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
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

[project.scripts]
labsys-mrcoordinator = "labsys.coordinator:main"
labsys-mrworker = "labsys.worker:main"
labsys-mrsequential = "labsys.sequential:main"

[tool.hatch.build.targets.wheel]
packages = ["labsys"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
