[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sinkhole"
version = "0.1.0"
description = "Building blocks for a DNS proxy: caching resolver, bootstrap resolution, query logging and Redis cache sync"
requires-python = ">=3.10"
keywords = ["dns", "resolver", "cache", "prefetch", "query-log", "redis"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Name Service (DNS)",
]
dependencies = [
    "dnspython",
    "sqlalchemy",
    "redis",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["sinkhole"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
