"""Pytest configuration and fixtures."""

import hashlib
import json
import os
from typing import AsyncGenerator, Dict, List, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

# Set DATABASE_URL for tests BEFORE importing regmirror.db
# This prevents the module from creating a data directory
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from regmirror.config import Settings
from regmirror.db import Base, create_engine, create_session_factory
from regmirror.models import *  # noqa: F401,F403 - register all models
from regmirror.services.registry_cache import RegistryCache

REGISTRY_URL = "http://registry.test"


@pytest.fixture
def settings() -> Settings:
    """Settings pointing at the fake registry."""
    return Settings(
        registry_url=REGISTRY_URL,
        registry_username="admin",
        registry_password="secret",
        sync_interval_seconds=300,
        sync_on_start=False,
        request_timeout=5.0,
        max_concurrency=4,
        database_url="sqlite+aiosqlite:///:memory:",
    )


@pytest.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    engine = create_engine("sqlite+aiosqlite:///:memory:")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the in-memory test database."""
    return create_session_factory(db_engine)


@pytest.fixture(scope="function")
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def registry_cache() -> RegistryCache:
    return RegistryCache()


def _digest(payload: bytes) -> str:
    return "sha256:" + hashlib.sha256(payload).hexdigest()


class FakeRegistry:
    """In-memory Docker Registry V2 served through httpx.MockTransport.

    Usage:
        registry = FakeRegistry()
        registry.add_image("ofkm/caddy", "latest", cmd=["caddy", "run"])
        async with httpx.AsyncClient(transport=registry.transport()) as client:
            ...
    """

    def __init__(self) -> None:
        self.repositories: Dict[str, Dict[str, Optional[dict]]] = {}
        self.blobs: Dict[str, dict] = {}
        self.manifests: Dict[str, tuple] = {}  # digest -> (body bytes, media type)
        self.failing_tag_lists: set = set()
        self.failing_manifests: set = set()
        self.catalog_status: int = 200
        self.catalog_page_size: Optional[int] = None
        self.delete_status: int = 202
        self.requests: List[httpx.Request] = []

    # Registry content -------------------------------------------------

    def add_manifest(self, body: dict, media_type: str) -> str:
        payload = json.dumps(body).encode()
        digest = _digest(payload)
        self.manifests[digest] = (payload, media_type)
        return digest

    def add_image(
        self,
        repo: str,
        tag: str,
        *,
        os_name: str = "linux",
        architecture: str = "amd64",
        cmd=None,
        entrypoint=None,
        exposed_ports: Optional[List[str]] = None,
        history: Optional[List[dict]] = None,
        oci: bool = False,
        layer_sizes: Optional[List[int]] = None,
        created: str = "2024-01-01T00:00:00Z",
    ) -> str:
        """Publish ``repo:tag`` and return its manifest digest."""
        config = {
            "created": created,
            "os": os_name,
            "architecture": architecture,
            "author": "ofkm",
            "config": {
                "Cmd": cmd,
                "Entrypoint": entrypoint,
                "ExposedPorts": {port: {} for port in (exposed_ports or [])},
                "WorkingDir": "/srv",
                "Labels": {"org.opencontainers.image.description": f"{repo} image"},
            },
            "history": history if history is not None else [
                {"created_by": "/bin/sh -c #(nop) ADD file:abc in / "},
                {"created_by": "/bin/sh -c apk add --no-cache curl"},
                {"created_by": '/bin/sh -c #(nop)  CMD ["sh"]', "empty_layer": True},
            ],
        }
        config_payload = json.dumps(config).encode()
        config_digest = _digest(config_payload + repo.encode() + tag.encode())
        self.blobs[config_digest] = config

        media_type = "application/vnd.oci.image.manifest.v1+json" if oci else \
            "application/vnd.docker.distribution.manifest.v2+json"
        manifest = {
            "schemaVersion": 2,
            "mediaType": media_type,
            "config": {"digest": config_digest, "size": len(config_payload)},
            "layers": [{"digest": f"sha256:{i:064d}", "size": size} for i, size in enumerate(layer_sizes or [100, 200])],
        }
        digest = self.add_manifest(manifest, media_type)
        self.repositories.setdefault(repo, {})[tag] = {"digest": digest}
        return digest

    def add_index(self, repo: str, tag: str, platform_digests: List[tuple]) -> str:
        """Publish an OCI index pointing at (digest, os, arch) platform manifests."""
        index = {
            "schemaVersion": 2,
            "mediaType": "application/vnd.oci.image.index.v1+json",
            "manifests": [
                {
                    "mediaType": "application/vnd.oci.image.manifest.v1+json",
                    "digest": digest,
                    "size": 500,
                    "platform": {"os": os_name, "architecture": arch},
                }
                for digest, os_name, arch in platform_digests
            ],
        }
        digest = self.add_manifest(index, "application/vnd.oci.image.index.v1+json")
        self.repositories.setdefault(repo, {})[tag] = {"digest": digest}
        return digest

    def add_empty_repository(self, repo: str) -> None:
        self.repositories[repo] = {}

    def remove_tag(self, repo: str, tag: str) -> None:
        self.repositories[repo].pop(tag, None)

    # HTTP -------------------------------------------------------------

    def requests_for(self, fragment: str) -> List[httpx.Request]:
        return [request for request in self.requests if fragment in request.url.path]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport())

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "DELETE" and "/manifests/" in path:
            return httpx.Response(self.delete_status, text="" if self.delete_status == 202 else "MANIFEST_UNKNOWN")

        if path == "/v2/_catalog":
            return self._catalog(request)

        if path.endswith("/tags/list"):
            repo = path[len("/v2/"):-len("/tags/list")]
            if repo in self.failing_tag_lists or repo not in self.repositories:
                return httpx.Response(404, json={"errors": [{"code": "NAME_UNKNOWN"}]})
            tags = list(self.repositories[repo].keys())
            return httpx.Response(200, json={"name": repo, "tags": tags or None})

        if "/manifests/" in path:
            repo, reference = path[len("/v2/"):].split("/manifests/", 1)
            if (repo, reference) in self.failing_manifests:
                return httpx.Response(404, json={"errors": [{"code": "MANIFEST_UNKNOWN"}]})
            digest = reference
            if not reference.startswith("sha256:"):
                entry = self.repositories.get(repo, {}).get(reference)
                if entry is None:
                    return httpx.Response(404, json={"errors": [{"code": "MANIFEST_UNKNOWN"}]})
                digest = entry["digest"]
            payload, media_type = self.manifests[digest]
            return httpx.Response(
                200,
                content=payload,
                headers={"Content-Type": media_type, "Docker-Content-Digest": digest},
            )

        if "/blobs/" in path:
            digest = path.split("/blobs/", 1)[1]
            if digest not in self.blobs:
                return httpx.Response(404, json={"errors": [{"code": "BLOB_UNKNOWN"}]})
            return httpx.Response(200, json=self.blobs[digest])

        return httpx.Response(404)

    def _catalog(self, request: httpx.Request) -> httpx.Response:
        if self.catalog_status != 200:
            return httpx.Response(self.catalog_status, text="unavailable")

        names = sorted(self.repositories)
        if not self.catalog_page_size:
            return httpx.Response(200, json={"repositories": names})

        last = request.url.params.get("last")
        start = names.index(last) + 1 if last else 0
        page = names[start:start + self.catalog_page_size]
        headers = {}
        if start + self.catalog_page_size < len(names):
            headers["Link"] = f'</v2/_catalog?n={self.catalog_page_size}&last={page[-1]}>; rel="next"'
        return httpx.Response(200, json={"repositories": page}, headers=headers)


@pytest.fixture
def fake_registry() -> FakeRegistry:
    return FakeRegistry()
