"""Tests for the registry crawler (regmirror/services/registry_client.py).

Tests the catalog and manifest client against an in-memory registry:
- Metadata derivation from manifest and config blob
- Dockerfile reconstruction from build history
- Manifest list / OCI index resolution
- Catalog pagination and namespace grouping
- Partial failure isolation
- Auth and Accept headers
- Retry of transient failures
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from regmirror.models.command import ABSENT, CommandList, Scalar
from regmirror.services.registry_client import (
    MANIFEST_ACCEPT,
    OCI_INDEX_V1,
    RegistryClient,
    normalize_registry_url,
    reconstruct_dockerfile,
    select_platform_manifest,
)


@pytest.fixture
async def http_client(fake_registry):
    async with fake_registry.client() as client:
        yield client


@pytest.fixture
def registry_client(settings, http_client):
    return RegistryClient(settings, http_client=http_client)


class TestNormalizeRegistryUrl:
    def test_base_url_unchanged(self):
        assert normalize_registry_url("https://reg.example.com") == "https://reg.example.com"

    def test_strips_trailing_slash(self):
        assert normalize_registry_url("https://reg.example.com/") == "https://reg.example.com"

    def test_strips_catalog_path(self):
        assert normalize_registry_url("https://reg.example.com/v2/_catalog") == "https://reg.example.com"


class TestReconstructDockerfile:
    def test_drops_nop_entries_and_strips_shell_prefix(self):
        history = [
            {"created_by": "/bin/sh -c #(nop) ADD file:abc in / "},
            {"created_by": "/bin/sh -c apk add --no-cache curl"},
            {"created_by": '/bin/sh -c #(nop)  CMD ["sh"]', "empty_layer": True},
        ]

        assert reconstruct_dockerfile(history) == "apk add --no-cache curl"

    def test_keeps_buildkit_instructions(self):
        history = [
            {"created_by": "WORKDIR /srv"},
            {"created_by": "RUN /bin/sh -c pip install -r requirements.txt # buildkit"},
            {"created_by": "COPY . . # buildkit"},
        ]

        assert reconstruct_dockerfile(history) == "WORKDIR /srv\nRUN pip install -r requirements.txt\nCOPY . ."

    def test_strips_build_arg_prefix(self):
        history = [{"created_by": "|1 VERSION=1.2 /bin/sh -c echo $VERSION"}]

        assert reconstruct_dockerfile(history) == "echo $VERSION"

    def test_skips_entries_without_created_by(self):
        assert reconstruct_dockerfile([{"comment": "imported"}, {}]) == ""

    def test_missing_history(self):
        assert reconstruct_dockerfile(None) == ""


class TestSelectPlatformManifest:
    def test_prefers_linux_amd64(self):
        index = {"manifests": [
            {"digest": "sha256:arm", "platform": {"os": "linux", "architecture": "arm64"}},
            {"digest": "sha256:amd", "platform": {"os": "linux", "architecture": "amd64"}},
        ]}

        assert select_platform_manifest(index)["digest"] == "sha256:amd"

    def test_skips_attestation_manifests(self):
        index = {"manifests": [
            {"digest": "sha256:att", "platform": {"os": "unknown", "architecture": "unknown"}},
            {"digest": "sha256:arm", "platform": {"os": "linux", "architecture": "arm64"}},
        ]}

        assert select_platform_manifest(index)["digest"] == "sha256:arm"

    def test_falls_back_to_first_entry(self):
        index = {"manifests": [{"digest": "sha256:first"}, {"digest": "sha256:second"}]}

        assert select_platform_manifest(index)["digest"] == "sha256:first"

    def test_empty_index(self):
        assert select_platform_manifest({"manifests": []}) is None


class TestFetchMetadata:
    """Test suite for per-tag metadata derivation."""

    async def test_derives_all_fields(self, fake_registry, registry_client):
        digest = fake_registry.add_image(
            "ofkm/caddy",
            "latest",
            cmd=["caddy", "run"],
            entrypoint="/docker-entrypoint.sh",
            exposed_ports=["80/tcp", "443/tcp"],
            layer_sizes=[1000, 2000],
        )
        manifest = json.loads(fake_registry.manifests[digest][0])

        metadata = await registry_client.fetch_metadata("ofkm/caddy", "latest")

        assert metadata is not None
        assert metadata.created == "2024-01-01T00:00:00Z"
        assert metadata.os == "linux"
        assert metadata.architecture == "amd64"
        assert metadata.author == "ofkm"
        assert metadata.docker_file == "apk add --no-cache curl"
        assert metadata.config_digest == manifest["config"]["digest"]
        assert metadata.content_digest == digest
        assert metadata.exposed_ports == ["80/tcp", "443/tcp"]
        assert metadata.command == CommandList(("caddy", "run"))
        assert metadata.entrypoint == Scalar("/docker-entrypoint.sh")
        assert metadata.total_size == manifest["config"]["size"] + 3000
        assert metadata.work_dir == "/srv"
        assert metadata.description == "ofkm/caddy image"
        assert metadata.is_oci is False
        assert metadata.index_digest is None

    async def test_missing_command_is_absent(self, fake_registry, registry_client):
        fake_registry.add_image("alpine", "3.19")

        metadata = await registry_client.fetch_metadata("alpine", "3.19")

        assert metadata.command is ABSENT
        assert metadata.entrypoint is ABSENT
        assert metadata.exposed_ports == []

    async def test_oci_manifest_flagged(self, fake_registry, registry_client):
        fake_registry.add_image("ofkm/app", "v1", oci=True)

        metadata = await registry_client.fetch_metadata("ofkm/app", "v1")

        assert metadata.is_oci is True

    async def test_resolves_oci_index_to_linux_amd64(self, fake_registry, registry_client):
        arm = fake_registry.add_image("ofkm/app", "arm-build", architecture="arm64", oci=True)
        amd = fake_registry.add_image("ofkm/app", "amd-build", architecture="amd64", oci=True)
        fake_registry.remove_tag("ofkm/app", "arm-build")
        fake_registry.remove_tag("ofkm/app", "amd-build")
        index_digest = fake_registry.add_index("ofkm/app", "latest", [(arm, "linux", "arm64"), (amd, "linux", "amd64")])

        metadata = await registry_client.fetch_metadata("ofkm/app", "latest")

        assert metadata.architecture == "amd64"
        assert metadata.is_oci is True
        assert metadata.index_digest == index_digest
        assert metadata.content_digest == index_digest
        assert fake_registry.requests_for(f"/manifests/{amd}")
        assert not fake_registry.requests_for(f"/manifests/{arm}")

    async def test_manifest_not_found_returns_none(self, fake_registry, registry_client):
        fake_registry.add_image("ofkm/caddy", "latest")
        fake_registry.failing_manifests.add(("ofkm/caddy", "latest"))

        assert await registry_client.fetch_metadata("ofkm/caddy", "latest") is None

    async def test_missing_config_blob_returns_none(self, fake_registry, registry_client):
        digest = fake_registry.add_image("ofkm/caddy", "latest")
        manifest = json.loads(fake_registry.manifests[digest][0])
        del fake_registry.blobs[manifest["config"]["digest"]]

        assert await registry_client.fetch_metadata("ofkm/caddy", "latest") is None

    async def test_manifest_without_config_returns_none(self, fake_registry, registry_client):
        digest = fake_registry.add_manifest(
            {"schemaVersion": 2, "mediaType": "application/vnd.docker.distribution.manifest.v2+json", "layers": []},
            "application/vnd.docker.distribution.manifest.v2+json",
        )
        fake_registry.repositories["ofkm/broken"] = {"latest": {"digest": digest}}

        assert await registry_client.fetch_metadata("ofkm/broken", "latest") is None

    async def test_empty_index_returns_none(self, fake_registry, registry_client):
        fake_registry.add_index("ofkm/app", "latest", [])

        assert await registry_client.fetch_metadata("ofkm/app", "latest") is None


class TestListTags:
    async def test_lists_tags_with_metadata(self, fake_registry, registry_client):
        fake_registry.add_image("ofkm/caddy", "latest")
        fake_registry.add_image("ofkm/caddy", "v2.7")

        image = await registry_client.list_tags("ofkm/caddy")

        assert image.name == "ofkm/caddy"
        assert [tag.name for tag in image.tags] == ["latest", "v2.7"]
        assert all(tag.metadata is not None for tag in image.tags)

    async def test_null_tag_list_is_empty(self, fake_registry, registry_client):
        fake_registry.add_empty_repository("ofkm/old")

        image = await registry_client.list_tags("ofkm/old")

        assert image.tags == []

    async def test_failed_metadata_keeps_tag(self, fake_registry, registry_client):
        fake_registry.add_image("ofkm/caddy", "latest")
        fake_registry.add_image("ofkm/caddy", "broken")
        fake_registry.failing_manifests.add(("ofkm/caddy", "broken"))

        image = await registry_client.list_tags("ofkm/caddy")

        tags = {tag.name: tag for tag in image.tags}
        assert tags["latest"].metadata is not None
        assert tags["broken"].metadata is None


class TestListRegistry:
    """Test suite for full registry crawls."""

    async def test_groups_images_by_namespace(self, fake_registry, registry_client):
        fake_registry.add_image("alpine", "latest")
        fake_registry.add_image("ofkm/caddy", "latest")
        fake_registry.add_image("ofkm/app", "v1")

        repos = await registry_client.list_registry()

        by_name = {repo.name: repo for repo in repos}
        assert set(by_name) == {"library", "ofkm"}
        assert [image.name for image in by_name["library"].images] == ["alpine"]
        assert [image.name for image in by_name["ofkm"].images] == ["ofkm/app", "ofkm/caddy"]
        assert by_name["library"].images[0].full_name == "library/alpine"

    async def test_failed_repository_does_not_affect_siblings(self, fake_registry, registry_client):
        for repo in ("a", "b", "c"):
            fake_registry.add_image(repo, "latest")
        fake_registry.failing_tag_lists.add("b")

        repos = await registry_client.list_registry()

        assert len(repos) == 1
        assert [image.name for image in repos[0].images] == ["a", "c"]

    async def test_namespace_with_only_failed_repositories_is_dropped(self, fake_registry, registry_client):
        fake_registry.add_image("alpine", "latest")
        fake_registry.add_image("ofkm/caddy", "latest")
        fake_registry.failing_tag_lists.add("ofkm/caddy")

        repos = await registry_client.list_registry()

        assert [repo.name for repo in repos] == ["library"]

    async def test_catalog_failure_returns_empty(self, fake_registry, registry_client):
        fake_registry.add_image("alpine", "latest")
        fake_registry.catalog_status = 401

        assert await registry_client.list_registry() == []
        assert not fake_registry.requests_for("/tags/list")

    async def test_follows_catalog_pagination(self, fake_registry, registry_client):
        for repo in ("a", "b", "c", "d", "e"):
            fake_registry.add_image(repo, "latest")
        fake_registry.catalog_page_size = 2

        names = await registry_client.list_repositories()

        assert names == ["a", "b", "c", "d", "e"]
        assert len(fake_registry.requests_for("/v2/_catalog")) == 3

    async def test_accepts_catalog_url(self, fake_registry, registry_client):
        fake_registry.add_image("alpine", "latest")

        repos = await registry_client.list_registry("http://registry.test/v2/_catalog")

        assert [repo.name for repo in repos] == ["library"]


class TestRequests:
    async def test_sends_basic_auth(self, fake_registry, registry_client):
        fake_registry.add_image("alpine", "latest")

        await registry_client.list_registry()

        assert fake_registry.requests
        assert all(request.headers["Authorization"].startswith("Basic ") for request in fake_registry.requests)

    async def test_no_auth_without_credentials(self, fake_registry, http_client):
        from regmirror.config import Settings

        client = RegistryClient(Settings(registry_url="http://registry.test"), http_client=http_client)
        fake_registry.add_image("alpine", "latest")

        await client.list_registry()

        assert all("Authorization" not in request.headers for request in fake_registry.requests)

    async def test_manifest_accept_header(self, fake_registry, registry_client):
        fake_registry.add_image("alpine", "latest")

        await registry_client.fetch_metadata("alpine", "latest")

        request = fake_registry.requests_for("/manifests/latest")[0]
        assert request.headers["Accept"] == MANIFEST_ACCEPT
        assert OCI_INDEX_V1 in request.headers["Accept"]

    async def test_injected_client_not_closed(self, settings, http_client):
        async with RegistryClient(settings, http_client=http_client):
            pass

        assert not http_client.is_closed


class TestRetry:
    """Transient failures are retried; client errors are not."""

    async def test_retries_server_errors(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"repositories": ["alpine"]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = RegistryClient(settings, http_client=http)
            with patch("regmirror.utils.retry.asyncio.sleep", new=AsyncMock()):
                names = await client.list_repositories()

        assert names == ["alpine"]
        assert len(calls) == 3

    async def test_does_not_retry_not_found(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = RegistryClient(settings, http_client=http)
            assert await client.fetch_metadata("alpine", "latest") is None

        assert len(calls) == 1

    async def test_timeout_gives_up_after_max_attempts(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectTimeout("timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = RegistryClient(settings, http_client=http)
            with patch("regmirror.utils.retry.asyncio.sleep", new=AsyncMock()):
                assert await client.list_registry() == []

        assert len(calls) == 3
