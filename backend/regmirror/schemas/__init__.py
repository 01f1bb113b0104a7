"""Crawl records and pydantic schemas for API validation."""

from regmirror.schemas.registry import (
    ImageMetadata,
    ImageTag,
    RegistryRepo,
    RepoImage,
    SyncStats,
    TagRecord,
    TagWithMetadata,
)
from regmirror.schemas.api import (
    DeleteResponse,
    ImageMetadataSchema,
    ImageTagSchema,
    RegistryRepoSchema,
    RepoImageSchema,
    SyncResponse,
)

__all__ = [
    "ImageMetadata",
    "ImageTag",
    "RegistryRepo",
    "RepoImage",
    "SyncStats",
    "TagRecord",
    "TagWithMetadata",
    "DeleteResponse",
    "ImageMetadataSchema",
    "ImageTagSchema",
    "RegistryRepoSchema",
    "RepoImageSchema",
    "SyncResponse",
]
