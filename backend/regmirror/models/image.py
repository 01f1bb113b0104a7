"""Image model - one row per registry repository path."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from regmirror.db import Base


class Image(Base):
    """Registry repository path tracked under a namespace."""

    __tablename__ = "images"
    __table_args__ = (
        UniqueConstraint("repository_id", "name", name="uq_images_repository_name"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(
        Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String, nullable=False)  # Path as listed in the catalog, e.g. "ofkm/caddy"
    full_name = Column(String, unique=True, nullable=False, index=True)  # "library/alpine", "ofkm/caddy"
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Image(full_name={self.full_name})>"
