"""Cached registry views and tag deletion."""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from regmirror.db import get_db
from regmirror.schemas.api import DeleteResponse, RegistryRepoSchema, RepoImageSchema

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/repositories", response_model=List[RegistryRepoSchema])
async def list_repositories(request: Request, db: AsyncSession = Depends(get_db)):
    """All cached namespaces with their images and tags."""
    repos = await request.app.state.registry_cache.get_repositories(db)
    return [RegistryRepoSchema.from_repo(repo) for repo in repos]


@router.delete("/images/{repo:path}/manifests/{digest}", response_model=DeleteResponse)
async def delete_manifest(repo: str, digest: str, request: Request):
    """Delete a tag's manifest from the registry and resync the cache."""
    deleted = await request.app.state.deletion_coordinator.delete_tag(repo, digest)
    if deleted:
        return DeleteResponse(success=True, message=f"Deleted {repo}@{digest}")
    return JSONResponse(
        status_code=502,
        content=DeleteResponse(success=False, message="Failed to delete manifest").model_dump(),
    )


@router.get("/images/{full_name:path}", response_model=RepoImageSchema)
async def get_image(full_name: str, request: Request, db: AsyncSession = Depends(get_db)):
    """One cached image with its tags."""
    image = await request.app.state.registry_cache.get_image(db, full_name)
    if image is None:
        raise HTTPException(status_code=404, detail="Image not found")
    return RepoImageSchema.from_image(image)
