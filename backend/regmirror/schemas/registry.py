"""Records produced by a registry crawl and returned by cache reads."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from regmirror.models.command import ABSENT, Command
from regmirror.services.namespaces import get_namespace


@dataclass
class ImageMetadata:
    """Metadata derived from a tag's manifest and image config.

    Attributes:
        created: Build timestamp from the config blob
        os: Target OS (e.g., "linux")
        architecture: Target CPU architecture (e.g., "amd64")
        author: Image author, if the config has one
        docker_file: Dockerfile-like text rebuilt from the build history
        config_digest: Digest of the config blob
        content_digest: Manifest digest (what the delete endpoint accepts)
        exposed_ports: Exposed ports in config order (e.g., ["80/tcp"])
        command: Cmd as a Command variant
        entrypoint: Entrypoint as a Command variant
        total_size: Config size plus all layer sizes, in bytes
        work_dir: WorkingDir from the config
        description: OCI description label
        is_oci: True when the manifest uses OCI media types
        index_digest: Digest of the manifest list / OCI index, if the tag points to one
    """

    created: Optional[str] = None
    os: Optional[str] = None
    architecture: Optional[str] = None
    author: Optional[str] = None
    docker_file: Optional[str] = None
    config_digest: Optional[str] = None
    content_digest: Optional[str] = None
    exposed_ports: List[str] = field(default_factory=list)
    command: Command = ABSENT
    entrypoint: Command = ABSENT
    total_size: Optional[int] = None
    work_dir: Optional[str] = None
    description: Optional[str] = None
    is_oci: bool = False
    index_digest: Optional[str] = None

    @property
    def digest(self) -> Optional[str]:
        """Digest to key the tag row on."""
        return self.content_digest or self.config_digest

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "os": self.os,
            "architecture": self.architecture,
            "author": self.author,
            "dockerFile": self.docker_file,
            "configDigest": self.config_digest,
            "contentDigest": self.content_digest,
            "exposedPorts": list(self.exposed_ports),
            "command": self.command.to_json(),
            "entrypoint": self.entrypoint.to_json(),
            "totalSize": self.total_size,
            "workDir": self.work_dir,
            "description": self.description,
            "isOCI": self.is_oci,
            "indexDigest": self.index_digest,
        }


@dataclass
class ImageTag:
    """One tag of one image; metadata is None when it could not be fetched."""

    name: str
    metadata: Optional[ImageMetadata] = None


@dataclass
class RepoImage:
    """A repository path and its tags."""

    name: str
    tags: List[ImageTag] = field(default_factory=list)

    @property
    def namespace(self) -> str:
        return get_namespace(self.name)

    @property
    def full_name(self) -> str:
        if "/" in self.name:
            return self.name
        return f"{self.namespace}/{self.name}"


@dataclass
class RegistryRepo:
    """All images under one namespace, as assembled by a crawl."""

    name: str
    images: List[RepoImage] = field(default_factory=list)


@dataclass
class TagRecord:
    """A cached tag row."""

    id: int
    image_id: int
    name: str
    digest: Optional[str]
    created_at: Optional[datetime] = None


@dataclass
class TagWithMetadata(TagRecord):
    """A cached tag together with its decoded metadata."""

    metadata: ImageMetadata = field(default_factory=ImageMetadata)


@dataclass
class SyncStats:
    """Counters from one cache reconciliation."""

    repositories: int = 0
    images: int = 0
    tags_created: int = 0
    tags_updated: int = 0
    tags_removed: int = 0
    metadata_saved: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "repositories": self.repositories,
            "images": self.images,
            "tags_created": self.tags_created,
            "tags_updated": self.tags_updated,
            "tags_removed": self.tags_removed,
            "metadata_saved": self.metadata_saved,
        }
