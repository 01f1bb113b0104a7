"""Pydantic schemas for the cache API."""

from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from regmirror.schemas.registry import ImageMetadata, ImageTag, RegistryRepo, RepoImage


class ImageMetadataSchema(BaseModel):
    """Tag metadata as served to the UI (camelCase keys, like the cache columns)."""

    model_config = ConfigDict(populate_by_name=True)

    created: Optional[str] = None
    os: Optional[str] = None
    architecture: Optional[str] = None
    author: Optional[str] = None
    docker_file: Optional[str] = Field(default=None, alias="dockerFile")
    config_digest: Optional[str] = Field(default=None, alias="configDigest")
    content_digest: Optional[str] = Field(default=None, alias="contentDigest")
    exposed_ports: List[str] = Field(default_factory=list, alias="exposedPorts")
    command: Union[str, List[str], None] = None
    entrypoint: Union[str, List[str], None] = None
    total_size: Optional[int] = Field(default=None, alias="totalSize")
    work_dir: Optional[str] = Field(default=None, alias="workDir")
    description: Optional[str] = None
    is_oci: bool = Field(default=False, alias="isOCI")
    index_digest: Optional[str] = Field(default=None, alias="indexDigest")

    @classmethod
    def from_metadata(cls, metadata: ImageMetadata) -> "ImageMetadataSchema":
        return cls.model_validate(metadata.to_dict())


class ImageTagSchema(BaseModel):
    name: str
    metadata: Optional[ImageMetadataSchema] = None

    @classmethod
    def from_tag(cls, tag: ImageTag) -> "ImageTagSchema":
        return cls(
            name=tag.name,
            metadata=ImageMetadataSchema.from_metadata(tag.metadata) if tag.metadata else None,
        )


class RepoImageSchema(BaseModel):
    name: str
    full_name: str = Field(alias="fullName")
    tags: List[ImageTagSchema]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_image(cls, image: RepoImage) -> "RepoImageSchema":
        return cls(
            name=image.name,
            full_name=image.full_name,
            tags=[ImageTagSchema.from_tag(tag) for tag in image.tags],
        )


class RegistryRepoSchema(BaseModel):
    """One namespace and its images."""

    name: str
    images: List[RepoImageSchema]

    @classmethod
    def from_repo(cls, repo: RegistryRepo) -> "RegistryRepoSchema":
        return cls(name=repo.name, images=[RepoImageSchema.from_image(image) for image in repo.images])


class SyncResponse(BaseModel):
    success: bool
    skipped: bool = False
    stats: Optional[Dict[str, int]] = None


class DeleteResponse(BaseModel):
    success: bool
    message: str
