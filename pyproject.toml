[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tgtask"
version = "0.1.0"
description = "Persistent task storage and priority queue for test orchestration, with test plans that run in-process"
requires-python = ">=3.10"
dependencies = []
keywords = ["testing", "task-queue", "priority-queue", "test-plans", "orchestration", "sqlite"]
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
    "Topic :: Software Development :: Testing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["tgtask"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
