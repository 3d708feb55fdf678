"""Releases and image pushes.

This module handles:
- Release ORM models and the local release store
- Tagging and pushing built images
- Creating and finalizing releases
"""

from compose_deploy.release.models import Release, ServiceImage

__all__ = ["Release", "ServiceImage"]
