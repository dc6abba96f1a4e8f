[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lightsentry"
version = "0.1.0"
description = "A lightweight, self-hosted collector for errors, performance transactions and logs sent by Sentry SDKs, stored in SQLite."
requires-python = ">=3.10"
keywords = ["sentry", "error-tracking", "monitoring", "logging", "performance", "mcp", "sqlite"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Web Environment",
    "Framework :: Flask",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Bug Tracking",
    "Topic :: System :: Logging",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "flask",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
light-sentry = "lightsentry.app:main"
light-sentry-mcp = "lightsentry.mcp:main"

[tool.hatch.build.targets.wheel]
packages = ["lightsentry"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
