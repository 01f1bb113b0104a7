"""API routers for regmirror."""

from fastapi import APIRouter

from regmirror.api import images, sync

api_router = APIRouter(prefix="/api")

api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(images.router, tags=["images"])
