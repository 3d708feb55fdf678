"""Release ORM models.

This module defines the Release and ServiceImage models used by the local
release store.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from compose_deploy.db import Base
from compose_deploy.types import ReleaseStatus, ServiceImageStatus


class Release(Base):
    """ORM model for a release.

    A Release groups the service images produced by one deploy.

    Attributes:
        id: Primary key.
        application_id: Application the release belongs to.
        user_id: User who created the release.
        commit: Random commit identifier.
        source: Release source ('local' for CLI deploys).
        composition: Composition snapshot.
        status: Release status (running, success, failed).
        start_timestamp: When the release was created.
        end_timestamp: When the release was finalized.
        created_at: Row creation time.
    """

    __tablename__ = "releases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    application_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    commit: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="local")
    composition: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ReleaseStatus.RUNNING.value, index=True
    )
    start_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    images: Mapped[list["ServiceImage"]] = relationship(
        "ServiceImage",
        back_populates="release",
        cascade="all, delete-orphan",
        order_by="ServiceImage.id",
    )

    __table_args__ = (Index("ix_releases_application_status", "application_id", "status"),)

    def __repr__(self) -> str:
        """Return string representation of Release."""
        return (
            f"<Release(id={self.id}, application_id={self.application_id}, "
            f"commit='{self.commit}', status='{self.status}')>"
        )


class ServiceImage(Base):
    """ORM model for one service image within a release.

    Attributes:
        id: Primary key.
        release_id: Foreign key to Release.
        service_name: Service the image was built for.
        is_stored_at__image_location: Registry location assigned to the image.
        status: Image status (running, success, failed).
        image_size: Image size in bytes.
        content_hash: Registry content digest.
        build_log: Captured build log.
        dockerfile: Dockerfile used for the build.
        project_type: Detected project type.
        start_timestamp: Build start time.
        end_timestamp: Build end time.
        push_timestamp: When the push completed.
        error_message: Error message if the push failed.
    """

    __tablename__ = "service_images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    release_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("releases.id"), nullable=False, index=True
    )
    service_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_stored_at__image_location: Mapped[str] = mapped_column(
        String(500), nullable=False
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ServiceImageStatus.RUNNING.value
    )
    image_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    build_log: Mapped[str | None] = mapped_column(Text, nullable=True)
    dockerfile: Mapped[str | None] = mapped_column(Text, nullable=True)
    project_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    start_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    push_timestamp: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    release: Mapped["Release"] = relationship("Release", back_populates="images")

    def __repr__(self) -> str:
        """Return string representation of ServiceImage."""
        return (
            f"<ServiceImage(id={self.id}, service_name='{self.service_name}', "
            f"status='{self.status}')>"
        )


__all__ = ["Release", "ServiceImage"]
