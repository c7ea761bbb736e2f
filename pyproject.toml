[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "devreports"
version = "1.0.0"
description = "Service that ingests device message TSV files, stores them in a database, renders per-device PDF reports and serves them over HTTP"
requires-python = ">=3.10"
keywords = ["reporting", "tsv", "devices", "pdf", "http", "api"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Web Environment",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: Flask",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "pyyaml",
    "sqlalchemy",
    "flask",
    "werkzeug",
    "matplotlib",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
devreports = "devreports.app:main"

[tool.hatch.build.targets.wheel]
packages = ["devreports"]

[tool.pytest.ini_options]
addopts = "-ra"
