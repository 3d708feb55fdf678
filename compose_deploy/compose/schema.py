"""Pydantic models for image descriptors.

An image descriptor identifies one service of a composition: either a
pre-built image reference or a build specification.
"""

from pydantic import BaseModel, ConfigDict, Field


class BuildContext(BaseModel):
    """Build specification for a service.

    Attributes:
        context: Build context path, relative to the project directory.
        dockerfile: Optional Dockerfile path, relative to the context.
        args: Build arguments passed to the daemon.
        tag: Image tag; assigned from the project and service names if absent.
    """

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    context: str = Field(default=".", description="Build context path")
    dockerfile: str | None = Field(default=None, description="Dockerfile path")
    args: dict[str, str] = Field(default_factory=dict, description="Build arguments")
    tag: str | None = Field(default=None, description="Image tag")


class ImageDescriptor(BaseModel):
    """One service's build or image specification.

    Attributes:
        service_name: Name of the service in the composition.
        image: Pre-built image reference, or a build context.
    """

    model_config = ConfigDict(extra="ignore")

    service_name: str = Field(description="Service name")
    image: str | BuildContext = Field(description="Image reference or build spec")

    @property
    def is_external(self) -> bool:
        """Whether the service uses a pre-built image (no build)."""
        return isinstance(self.image, str)

    @property
    def image_name(self) -> str | None:
        """Return the image reference or assigned tag."""
        if isinstance(self.image, str):
            return self.image
        return self.image.tag


__all__ = ["BuildContext", "ImageDescriptor"]
