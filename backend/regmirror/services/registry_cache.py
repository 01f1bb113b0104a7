"""Relational cache of registry tags and their image metadata."""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from regmirror.exceptions import ConstraintError
from regmirror.models import Image, Repository, Tag, TagMetadata
from regmirror.models.command import decode_command, encode_command
from regmirror.schemas.registry import (
    ImageMetadata,
    ImageTag,
    RegistryRepo,
    RepoImage,
    SyncStats,
    TagRecord,
    TagWithMetadata,
)
from regmirror.services.namespaces import get_namespace
from regmirror.utils.error_handling import log_and_continue

LATEST_TAG = "latest"

# "latest" first, then lexicographic
TAG_ORDER = (case((Tag.name == LATEST_TAG, 0), else_=1), Tag.name)


def parse_json(text: Optional[str], default: Any) -> Any:
    """Decode JSON text, returning ``default`` when empty or malformed."""
    if not text:
        return default
    try:
        return json.loads(text)
    except ValueError:
        return default


def _to_record(tag: Tag) -> TagRecord:
    return TagRecord(
        id=tag.id,
        image_id=tag.image_id,
        name=tag.name,
        digest=tag.digest,
        created_at=tag.created_at,
    )


def _metadata_from_row(row: Optional[TagMetadata]) -> ImageMetadata:
    if row is None:
        return ImageMetadata()

    exposed_ports = parse_json(row.exposed_ports, [])
    if not isinstance(exposed_ports, list):
        exposed_ports = []

    return ImageMetadata(
        created=row.created_at or None,
        os=row.os or None,
        architecture=row.architecture or None,
        author=row.author or None,
        docker_file=row.docker_file or None,
        content_digest=row.content_digest or None,
        exposed_ports=[str(port) for port in exposed_ports],
        command=decode_command(row.command),
        entrypoint=decode_command(row.entrypoint),
        total_size=row.total_size or None,
        work_dir=row.work_dir or None,
        description=row.description or None,
        is_oci=bool(row.is_oci),
        index_digest=row.index_digest or None,
    )


def _apply_metadata(row: TagMetadata, metadata: ImageMetadata) -> None:
    row.created_at = metadata.created
    row.os = metadata.os
    row.architecture = metadata.architecture
    row.author = metadata.author
    row.docker_file = metadata.docker_file
    row.exposed_ports = json.dumps(list(metadata.exposed_ports or []))
    row.total_size = metadata.total_size
    row.work_dir = metadata.work_dir
    row.command = encode_command(metadata.command)
    row.description = metadata.description
    row.content_digest = metadata.content_digest
    row.entrypoint = encode_command(metadata.entrypoint)
    row.is_oci = 1 if metadata.is_oci else 0
    row.index_digest = metadata.index_digest


class RegistryCache:
    """Reads and writes the tag cache.

    Every method takes the database session as its first argument. Single
    mutations commit on their own; ``sync_from_registry`` applies a whole
    crawl in one transaction.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    async def create(self, db: AsyncSession, image_id: int, name: str, digest: Optional[str]) -> int:
        """Insert a tag and return its id.

        Raises:
            ConstraintError: If the image already has a tag with this name
        """
        tag = Tag(image_id=image_id, name=name, digest=digest)
        try:
            async with db.begin_nested():
                db.add(tag)
                await db.flush()
        except IntegrityError as e:
            if tag in db:
                db.expunge(tag)
            raise ConstraintError(f"Tag {name!r} already exists for image {image_id}") from e

        await db.commit()
        return tag.id

    async def get_by_id(self, db: AsyncSession, tag_id: int) -> Optional[TagRecord]:
        tag = await db.get(Tag, tag_id)
        return _to_record(tag) if tag else None

    async def find_by_name(self, db: AsyncSession, image_id: int, name: str) -> Optional[TagRecord]:
        result = await db.execute(select(Tag).where(Tag.image_id == image_id, Tag.name == name))
        tag = result.scalar_one_or_none()
        return _to_record(tag) if tag else None

    async def get_by_image_id(self, db: AsyncSession, image_id: int) -> List[TagRecord]:
        """Tags of one image, "latest" first and the rest by name."""
        result = await db.execute(select(Tag).where(Tag.image_id == image_id).order_by(*TAG_ORDER))
        return [_to_record(tag) for tag in result.scalars().all()]

    async def count_by_image(self, db: AsyncSession, image_id: int) -> int:
        result = await db.execute(select(func.count(Tag.id)).where(Tag.image_id == image_id))
        return result.scalar_one()

    async def delete(self, db: AsyncSession, tag_id: int) -> bool:
        """Delete a tag and its metadata.

        Metadata removal is best-effort since a tag may have none; the tag
        delete itself must succeed.

        Returns:
            True if a tag row was removed
        """
        try:
            async with db.begin_nested():
                await db.execute(delete(TagMetadata).where(TagMetadata.tag_id == tag_id))
        except SQLAlchemyError as e:
            log_and_continue(self.logger, e, f"Failed to delete metadata for tag {tag_id}")

        result = await db.execute(delete(Tag).where(Tag.id == tag_id))
        await db.commit()
        return result.rowcount > 0

    async def delete_by_digest(self, db: AsyncSession, digest: str) -> int:
        """Delete every tag pointing at a manifest digest.

        Returns:
            Number of tag rows removed
        """
        tag_ids = select(Tag.id).where(Tag.digest == digest)
        await db.execute(delete(TagMetadata).where(TagMetadata.tag_id.in_(tag_ids)))
        result = await db.execute(delete(Tag).where(Tag.digest == digest))
        await db.commit()
        return result.rowcount

    async def clear(self, db: AsyncSession) -> None:
        """Remove all tags and metadata (images and namespaces are kept)."""
        await db.execute(delete(TagMetadata))
        await db.execute(delete(Tag))
        await db.commit()
        self.logger.info("Cleared tag cache")

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def _upsert_metadata(self, db: AsyncSession, tag_id: int, metadata: ImageMetadata) -> TagMetadata:
        result = await db.execute(select(TagMetadata).where(TagMetadata.tag_id == tag_id))
        row = result.scalar_one_or_none()
        if row is None:
            row = TagMetadata(tag_id=tag_id)
            db.add(row)
        _apply_metadata(row, metadata)
        await db.flush()
        return row

    async def save_metadata(self, db: AsyncSession, tag_id: int, metadata: ImageMetadata) -> None:
        """Store metadata for a tag, replacing any previous row for it."""
        await self._upsert_metadata(db, tag_id, metadata)
        await db.commit()

    async def get_with_metadata(self, db: AsyncSession, tag_id: int) -> Optional[TagWithMetadata]:
        """Tag joined with its metadata; missing metadata yields empty fields."""
        result = await db.execute(
            select(Tag, TagMetadata)
            .outerjoin(TagMetadata, TagMetadata.tag_id == Tag.id)
            .where(Tag.id == tag_id)
        )
        row = result.first()
        if row is None:
            return None

        tag, metadata = row
        return TagWithMetadata(
            id=tag.id,
            image_id=tag.image_id,
            name=tag.name,
            digest=tag.digest,
            created_at=tag.created_at,
            metadata=_metadata_from_row(metadata),
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _get_or_create_repository(self, db: AsyncSession, name: str) -> Repository:
        result = await db.execute(select(Repository).where(Repository.name == name))
        repository = result.scalar_one_or_none()
        if repository is None:
            repository = Repository(name=name)
            db.add(repository)
            await db.flush()
        return repository

    async def _get_or_create_image(self, db: AsyncSession, repository: Repository, image: RepoImage) -> Image:
        result = await db.execute(select(Image).where(Image.full_name == image.full_name))
        row = result.scalar_one_or_none()
        if row is None:
            row = Image(repository_id=repository.id, name=image.name, full_name=image.full_name)
            db.add(row)
            await db.flush()
        else:
            if row.repository_id != repository.id:
                row.repository_id = repository.id
            if row.name != image.name:
                row.name = image.name
        return row

    async def _sync_image_tags(self, db: AsyncSession, image_row: Image, tags: Iterable[ImageTag], stats: SyncStats) -> None:
        result = await db.execute(select(Tag).where(Tag.image_id == image_row.id))
        existing: Dict[str, Tag] = {tag.name: tag for tag in result.scalars().all()}
        seen = set()

        for image_tag in tags:
            if image_tag.name in seen:
                continue
            seen.add(image_tag.name)

            metadata = image_tag.metadata
            digest = metadata.digest if metadata else None
            tag = existing.get(image_tag.name)

            if tag is None:
                tag = Tag(image_id=image_row.id, name=image_tag.name, digest=digest)
                db.add(tag)
                await db.flush()
                stats.tags_created += 1
            elif digest and tag.digest != digest:
                tag.digest = digest
                stats.tags_updated += 1

            # A failed metadata fetch keeps whatever was cached before
            if metadata is not None:
                await self._upsert_metadata(db, tag.id, metadata)
                stats.metadata_saved += 1

        stale_ids = [tag.id for name, tag in existing.items() if name not in seen]
        if stale_ids:
            await db.execute(delete(TagMetadata).where(TagMetadata.tag_id.in_(stale_ids)))
            await db.execute(delete(Tag).where(Tag.id.in_(stale_ids)))
            stats.tags_removed += len(stale_ids)
            self.logger.info(f"Removed {len(stale_ids)} stale tags from {image_row.full_name}")

    async def sync_from_registry(self, db: AsyncSession, repos: List[RegistryRepo]) -> SyncStats:
        """Reconcile a crawl result into the cache.

        Namespaces, images and tags are upserted by their natural keys and
        metadata by tag id, so applying the same crawl twice changes nothing.
        Tags are only pruned inside images the crawl actually returned;
        images missing from the crawl (e.g. a failed tag list) keep their
        cached rows.

        Returns:
            Counters for the reconciliation
        """
        stats = SyncStats()
        synced: Dict[str, str] = {}
        try:
            for repo in repos:
                repository = await self._get_or_create_repository(db, repo.name)
                stats.repositories += 1
                for image in repo.images:
                    # "alpine" and "library/alpine" share one image row; the first catalog entry wins
                    if image.full_name in synced:
                        self.logger.warning(
                            f"Catalog entries {synced[image.full_name]!r} and {image.name!r} both map to "
                            f"{image.full_name}, skipping {image.name!r}"
                        )
                        continue
                    synced[image.full_name] = image.name
                    image_row = await self._get_or_create_image(db, repository, image)
                    stats.images += 1
                    await self._sync_image_tags(db, image_row, image.tags, stats)
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            raise

        self.logger.info(
            f"Cache synced: {stats.images} images, {stats.tags_created} tags created, "
            f"{stats.tags_updated} updated, {stats.tags_removed} removed"
        )
        return stats

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def _tags_for_images(self, db: AsyncSession, image_ids: List[int]) -> Dict[int, List[ImageTag]]:
        tags_by_image: Dict[int, List[ImageTag]] = {image_id: [] for image_id in image_ids}
        if not image_ids:
            return tags_by_image

        result = await db.execute(
            select(Tag, TagMetadata)
            .outerjoin(TagMetadata, TagMetadata.tag_id == Tag.id)
            .where(Tag.image_id.in_(image_ids))
            .order_by(Tag.image_id, *TAG_ORDER)
        )
        for tag, metadata in result.all():
            tags_by_image[tag.image_id].append(
                ImageTag(name=tag.name, metadata=_metadata_from_row(metadata) if metadata else None)
            )
        return tags_by_image

    async def get_repositories(self, db: AsyncSession) -> List[RegistryRepo]:
        """Rebuild the namespace -> image -> tag view from the cache."""
        repositories = (await db.execute(select(Repository).order_by(Repository.name))).scalars().all()
        images = (await db.execute(select(Image).order_by(Image.name))).scalars().all()
        tags_by_image = await self._tags_for_images(db, [image.id for image in images])

        images_by_repository: Dict[int, List[RepoImage]] = {}
        for image in images:
            images_by_repository.setdefault(image.repository_id, []).append(
                RepoImage(name=image.name, tags=tags_by_image[image.id])
            )

        return [
            RegistryRepo(name=repository.name, images=images_by_repository.get(repository.id, []))
            for repository in repositories
            if images_by_repository.get(repository.id)
        ]

    async def get_image(self, db: AsyncSession, full_name: str) -> Optional[RepoImage]:
        """Look up one image by full name ("ofkm/caddy" or "library/alpine")."""
        if "/" not in full_name:
            full_name = f"{get_namespace(full_name)}/{full_name}"

        result = await db.execute(select(Image).where(Image.full_name == full_name))
        image = result.scalar_one_or_none()
        if image is None:
            return None

        tags_by_image = await self._tags_for_images(db, [image.id])
        return RepoImage(name=image.name, tags=tags_by_image[image.id])
