[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "perfmesh"
version = "0.1.0"
description = "Distributed performance monitoring: a TCP node monitor with cross-node aggregation, a reporting node, a hash-linked record chain and a rolling metrics view"
requires-python = ">=3.10"
dependencies = []
keywords = ["monitoring", "performance", "distributed", "metrics", "aggregation"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
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

[project.scripts]
perfmesh = "perfmesh.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["perfmesh"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
