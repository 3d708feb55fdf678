"""Composition handling.

This module handles:
- Image descriptor models
- Loading compositions and assigning default tags
"""

from compose_deploy.compose.schema import BuildContext, ImageDescriptor

__all__ = ["BuildContext", "ImageDescriptor"]
