[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kinstallutils"
version = "0.1.0"
description = "Utilities for ordering, parsing, patching and reconciling Kubernetes resources and installing Helm chart releases"
requires-python = ">=3.10"
keywords = ["kubernetes", "helm", "manifests", "installer", "reconcile", "helmignore"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["kinstallutils"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
