[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "oomwatch"
version = "0.1.0"
description = "Cgroup v2 state, per-interval context caching, a stats socket and logging for out-of-memory monitoring"
requires-python = ">=3.10"
dependencies = []
keywords = ["oom", "cgroup", "cgroup2", "psi", "memory", "monitoring", "linux"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["oomwatch"]

[tool.pytest.ini_options]
addopts = "-ra"
