"""Registry V2 client that crawls a registry into structured records."""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx

from regmirror.config import Settings
from regmirror.exceptions import DecodeError, ManifestError, NetworkError, RegistryMirrorError
from regmirror.models.command import command_from_value
from regmirror.schemas.registry import ImageMetadata, ImageTag, RegistryRepo, RepoImage
from regmirror.services.namespaces import group_by_namespace
from regmirror.utils.retry import async_retry

DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST_V1 = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX_V1 = "application/vnd.oci.image.index.v1+json"

MANIFEST_ACCEPT = ", ".join([DOCKER_MANIFEST_V2, DOCKER_MANIFEST_LIST_V2, OCI_MANIFEST_V1, OCI_INDEX_V1])
INDEX_MEDIA_TYPES = (DOCKER_MANIFEST_LIST_V2, OCI_INDEX_V1)

CATALOG_PATH = "/v2/_catalog"
PREFERRED_PLATFORM = ("linux", "amd64")

# Marker the classic builder puts on metadata-only history entries (ENV, CMD, LABEL...)
NOP_MARKER = "#(nop)"
_SHELL_PREFIX = re.compile(r"^(?P<run>RUN\s+)?(?:\|\d+(?:\s+\S+=\S*)*\s+)?/bin/sh -c\s+")
_BUILDKIT_SUFFIX = re.compile(r"\s+# buildkit$")


def normalize_registry_url(url: str) -> str:
    """Return the registry base URL.

    Accepts either the base URL or a URL already pointing at the catalog
    ("https://reg.example.com/v2/_catalog").
    """
    base = url.strip().rstrip("/")
    if base.endswith(CATALOG_PATH):
        base = base[: -len(CATALOG_PATH)]
    return base.rstrip("/")


def reconstruct_dockerfile(history: Optional[List[Dict[str, Any]]]) -> str:
    """Rebuild Dockerfile-like text from an image config's history.

    Entries without ``created_by`` and metadata-only ``#(nop)`` entries are
    dropped; the shell invocation prefix is stripped from the rest.
    """
    commands = []
    for entry in history or []:
        created_by = (entry or {}).get("created_by")
        if not created_by or NOP_MARKER in created_by:
            continue
        command = _SHELL_PREFIX.sub(lambda m: m.group("run") or "", created_by, count=1)
        command = _BUILDKIT_SUFFIX.sub("", command)
        commands.append(command)
    return "\n".join(commands)


def select_platform_manifest(index: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Pick one platform manifest descriptor from a manifest list / OCI index.

    Prefers linux/amd64, then the first real platform (attestation manifests
    are published as unknown/unknown), then whatever comes first.
    """
    manifests = index.get("manifests") or []
    if not manifests:
        return None

    for descriptor in manifests:
        platform = descriptor.get("platform") or {}
        if (platform.get("os"), platform.get("architecture")) == PREFERRED_PLATFORM:
            return descriptor

    for descriptor in manifests:
        platform = descriptor.get("platform") or {}
        if platform.get("os") not in (None, "unknown") and platform.get("architecture") not in (None, "unknown"):
            return descriptor

    return manifests[0]


def _is_transient(error: Exception) -> bool:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    return True


class RegistryClient:
    """Crawls a Docker Registry HTTP API V2 endpoint.

    Uses a single httpx.AsyncClient with an explicit timeout; every request
    carries the static basic-auth credential. All request fan-out is bounded
    by a semaphore so a large catalog does not open hundreds of connections.

    Example:
        async with RegistryClient(settings) as client:
            repos = await client.list_registry()
    """

    def __init__(
        self,
        settings: Settings,
        logger: Optional[logging.Logger] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize the registry client.

        Args:
            settings: Registry URL, credentials, timeout and concurrency limits
            logger: Logger to report through (defaults to this module's logger)
            http_client: Pre-built client (tests inject one with a MockTransport)
        """
        self.settings = settings
        self.base_url = normalize_registry_url(settings.registry_url)
        self.logger = logger or logging.getLogger(__name__)
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(
            timeout=settings.request_timeout,
            headers={"Accept": "application/json"},
        )
        self._semaphore = asyncio.Semaphore(settings.max_concurrency)

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self.client.aclose()

    @async_retry(
        max_attempts=3,
        backoff_base=2.0,
        backoff_max=10.0,
        exceptions=(httpx.TransportError, httpx.HTTPStatusError),
        should_retry=_is_transient,
    )
    async def _get_with_retry(self, url: str, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        async with self._semaphore:
            response = await self.client.get(url, headers=headers, auth=self.settings.basic_auth)
        response.raise_for_status()
        return response

    async def _get(self, url: str, accept: Optional[str] = None) -> httpx.Response:
        """GET a registry URL, mapping every httpx failure to NetworkError."""
        headers = {"Accept": accept} if accept else None
        try:
            return await self._get_with_retry(url, headers=headers)
        except httpx.HTTPStatusError as e:
            raise NetworkError(url, e.response.reason_phrase, status_code=e.response.status_code) from e
        except httpx.TimeoutException as e:
            raise NetworkError(url, f"timed out ({type(e).__name__})") from e
        except httpx.HTTPError as e:
            raise NetworkError(url, str(e) or type(e).__name__) from e

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except (ValueError, UnicodeDecodeError) as e:
            raise DecodeError(f"Invalid JSON from {response.request.url}: {e}") from e

    @staticmethod
    def _next_page(response: httpx.Response) -> Optional[str]:
        """Follow an RFC 5988 ``Link: <...>; rel="next"`` header."""
        next_link = response.links.get("next", {}).get("url")
        if not next_link:
            return None
        return str(response.url.join(next_link))

    async def list_repositories(self, registry_url: Optional[str] = None) -> List[str]:
        """Fetch every repository name from the catalog, following pagination.

        Raises:
            NetworkError: If a catalog page cannot be fetched
            DecodeError: If a catalog page is not JSON
        """
        base = normalize_registry_url(registry_url) if registry_url else self.base_url
        url: Optional[str] = f"{base}{CATALOG_PATH}"
        repositories: List[str] = []

        while url:
            response = await self._get(url, accept="application/json")
            data = self._json(response)
            repositories.extend(data.get("repositories") or [])
            url = self._next_page(response)

        return repositories

    async def list_tags(self, repo: str, registry_url: Optional[str] = None) -> RepoImage:
        """List the tags of one repository and fetch metadata for each tag.

        A repository whose tags were all deleted reports ``"tags": null``;
        it comes back as an image with no tags.

        Raises:
            NetworkError: If the tag list cannot be fetched
            DecodeError: If the tag list is not JSON
        """
        base = normalize_registry_url(registry_url) if registry_url else self.base_url
        url: Optional[str] = f"{base}/v2/{repo}/tags/list"
        tag_names: List[str] = []
        name = repo

        while url:
            response = await self._get(url, accept="application/json")
            data = self._json(response)
            name = data.get("name") or name
            tag_names.extend(data.get("tags") or [])
            url = self._next_page(response)

        async def build_tag(tag: str) -> ImageTag:
            return ImageTag(name=tag, metadata=await self.fetch_metadata(repo, tag, registry_url=base))

        tags = await asyncio.gather(*(build_tag(tag) for tag in tag_names))
        return RepoImage(name=name, tags=list(tags))

    async def _resolve_manifest(self, base: str, repo: str, reference: str) -> Tuple[Dict[str, Any], str, Optional[str], Optional[str]]:
        """Fetch the image manifest for a reference, descending into an index.

        Returns:
            (manifest, media_type, content_digest, index_digest)
        """
        response = await self._get(f"{base}/v2/{repo}/manifests/{reference}", accept=MANIFEST_ACCEPT)
        manifest = self._json(response)
        media_type = manifest.get("mediaType") or response.headers.get("Content-Type", "").split(";")[0]
        content_digest = response.headers.get("Docker-Content-Digest")
        index_digest = None

        if media_type in INDEX_MEDIA_TYPES or ("manifests" in manifest and "config" not in manifest):
            index_digest = content_digest
            descriptor = select_platform_manifest(manifest)
            if not descriptor or not descriptor.get("digest"):
                raise ManifestError(repo, reference, "Manifest index lists no platform manifests")
            self.logger.debug(
                f"Manifest index for {repo}:{reference}, using platform manifest {descriptor['digest']}"
            )
            response = await self._get(f"{base}/v2/{repo}/manifests/{descriptor['digest']}", accept=MANIFEST_ACCEPT)
            manifest = self._json(response)
            media_type = (
                manifest.get("mediaType")
                or descriptor.get("mediaType")
                or response.headers.get("Content-Type", "").split(";")[0]
            )

        return manifest, media_type, content_digest, index_digest

    async def _fetch_metadata(self, base: str, repo: str, tag: str) -> ImageMetadata:
        manifest, media_type, content_digest, index_digest = await self._resolve_manifest(base, repo, tag)

        config_descriptor = manifest.get("config") or {}
        config_digest = config_descriptor.get("digest")
        if not config_digest:
            raise ManifestError(repo, tag)

        response = await self._get(f"{base}/v2/{repo}/blobs/{config_digest}")
        config = self._json(response)
        runtime = config.get("config") or {}
        labels = runtime.get("Labels") or {}

        layer_sizes = [layer.get("size") or 0 for layer in manifest.get("layers") or []]
        total_size = (config_descriptor.get("size") or 0) + sum(layer_sizes)

        return ImageMetadata(
            created=config.get("created"),
            os=config.get("os"),
            architecture=config.get("architecture"),
            author=config.get("author"),
            docker_file=reconstruct_dockerfile(config.get("history")),
            config_digest=config_digest,
            content_digest=content_digest,
            exposed_ports=list((runtime.get("ExposedPorts") or {}).keys()),
            command=command_from_value(runtime.get("Cmd")),
            entrypoint=command_from_value(runtime.get("Entrypoint")),
            total_size=total_size or None,
            work_dir=runtime.get("WorkingDir") or None,
            description=labels.get("org.opencontainers.image.description") or labels.get("description"),
            is_oci=media_type.startswith("application/vnd.oci."),
            index_digest=index_digest,
        )

    async def fetch_metadata(self, repo: str, tag: str, registry_url: Optional[str] = None) -> Optional[ImageMetadata]:
        """Fetch manifest and config for ``repo:tag`` and derive its metadata.

        Failures are logged and reported as None so one bad tag never
        aborts the rest of the crawl.

        Args:
            repo: Repository path (e.g., "ofkm/caddy")
            tag: Tag name
            registry_url: Registry base URL (defaults to the configured one)

        Returns:
            ImageMetadata, or None if it could not be fetched
        """
        base = normalize_registry_url(registry_url) if registry_url else self.base_url
        try:
            return await self._fetch_metadata(base, repo, tag)
        except RegistryMirrorError as e:
            self.logger.error(f"Error fetching metadata for {repo}:{tag}: {e}")
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            self.logger.error(f"Invalid manifest data for {repo}:{tag}: {type(e).__name__}: {e}")
        return None

    async def _list_tags_or_none(self, base: str, repo: str) -> Optional[RepoImage]:
        try:
            return await self.list_tags(repo, registry_url=base)
        except RegistryMirrorError as e:
            self.logger.error(f"Error fetching tags for {repo}: {e}")
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            self.logger.error(f"Invalid tag list for {repo}: {type(e).__name__}: {e}")
        return None

    async def _build_namespace(self, base: str, namespace: str, repos: List[str]) -> RegistryRepo:
        images = await asyncio.gather(*(self._list_tags_or_none(base, repo) for repo in repos))
        return RegistryRepo(name=namespace, images=[image for image in images if image is not None])

    async def list_registry(self, catalog_url: Optional[str] = None) -> List[RegistryRepo]:
        """Crawl the whole registry into namespace-grouped records.

        Repositories whose tag list fails are left out of their namespace,
        and namespaces without any image are dropped. A catalog failure
        yields an empty list, which callers must treat as "nothing learned"
        rather than "registry is empty".

        Args:
            catalog_url: Registry base URL or catalog URL (defaults to the configured registry)

        Returns:
            One RegistryRepo per non-empty namespace
        """
        base = normalize_registry_url(catalog_url) if catalog_url else self.base_url
        self.logger.info(f"Fetching repositories from {base}{CATALOG_PATH}")

        try:
            repositories = await self.list_repositories(base)
        except RegistryMirrorError as e:
            self.logger.error(f"Failed to fetch repositories from {base}: {e}")
            return []
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            self.logger.error(f"Invalid catalog response from {base}: {type(e).__name__}: {e}")
            return []

        self.logger.info(f"Found {len(repositories)} repositories")

        grouped = group_by_namespace(repositories)
        namespaces = await asyncio.gather(
            *(self._build_namespace(base, namespace, repos) for namespace, repos in grouped.items())
        )
        return [namespace for namespace in namespaces if namespace.images]
