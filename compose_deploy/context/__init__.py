"""Build context packaging.

This module handles:
- Ignore-file classification and filtering
- Packaging a source directory into a tar archive
"""

from compose_deploy.context.tarball import (
    ContextPackagingError,
    TarDirectoryOptions,
    tar_directory,
)

__all__ = ["ContextPackagingError", "TarDirectoryOptions", "tar_directory"]
