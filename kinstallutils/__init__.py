"""Utilities for ordering, parsing, patching and reconciling Kubernetes resources and installing Helm chart releases."""

__version__ = "0.1.0"