"""Tag and tag metadata models."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from regmirror.db import Base


class Tag(Base):
    """A tag of one image. (image_id, name) is unique."""

    __tablename__ = "tags"
    __table_args__ = (
        UniqueConstraint("image_id", "name", name="uq_tags_image_name"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    image_id = Column(
        Integer, ForeignKey("images.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String, nullable=False)
    digest = Column(String, nullable=True, index=True)  # Manifest digest used for deletion
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Tag(image_id={self.image_id}, name={self.name})>"


class TagMetadata(Base):
    """Image metadata for a tag, one row per tag.

    Column names match the schema the UI reads. ``exposedPorts``,
    ``command`` and ``entrypoint`` hold text that is either a plain string
    or JSON (see regmirror.models.command).
    """

    __tablename__ = "tag_metadata"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tag_id = Column(
        Integer, ForeignKey("tags.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    created_at = Column(String, nullable=True)  # Image build timestamp as reported by the config
    os = Column(String, nullable=True)
    architecture = Column(String, nullable=True)
    author = Column(String, nullable=True)
    docker_file = Column("dockerFile", Text, nullable=True)
    exposed_ports = Column("exposedPorts", Text, nullable=False, default="[]", server_default="[]")
    total_size = Column("totalSize", Integer, nullable=True)
    work_dir = Column("workDir", String, nullable=True)
    command = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    content_digest = Column("contentDigest", String, nullable=True)
    entrypoint = Column(Text, nullable=True)
    is_oci = Column("isOCI", Integer, nullable=False, default=0, server_default="0")
    index_digest = Column("indexDigest", String, nullable=True)

    def __repr__(self):
        return f"<TagMetadata(tag_id={self.tag_id}, os={self.os}, arch={self.architecture})>"
