[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "jsonbstore"
version = "0.1.0"
description = "Store document-database collections in PostgreSQL JSONB tables, with filters, sorts and projections translated to SQL"
requires-python = ">=3.10"
dependencies = [
    "pymongo",
]
keywords = ["postgresql", "jsonb", "bson", "documents", "document store", "jsonpath"]
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
    "Framework :: AsyncIO",
    "Topic :: Database",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["jsonbstore"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
