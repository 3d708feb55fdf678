"""Compose Deploy - build and release multi-container compositions.

This package packages build contexts, drives concurrent per-service builds
against a container daemon with live progress, and pushes the resulting
images as a release.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
