[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "smopt"
version = "0.1.0"
description = "Optimizer for stack machine code: data and control flow graphs, constant propagation, inlining and tail calls"
requires-python = ">=3.10"
dependencies = []
keywords = ["compiler", "optimizer", "stack machine", "bytecode", "data flow", "control flow"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Compilers",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
smopt = "smopt.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["smopt"]

[tool.pytest.ini_options]
addopts = "-ra"
