"""Database models for the registry cache."""

from regmirror.models.repository import Repository
from regmirror.models.image import Image
from regmirror.models.tag import Tag, TagMetadata

__all__ = [
    "Repository",
    "Image",
    "Tag",
    "TagMetadata",
]
