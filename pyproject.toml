[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "netopstate"
version = "0.1.0"
description = "Reconciliation states that render and sync cluster networking components from a policy resource"
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "operator", "reconcile", "networking", "rdma", "macvlan"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["netopstate"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
