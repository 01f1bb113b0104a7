"""Manifest deletion followed by a cache resync."""

import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from regmirror.config import Settings
from regmirror.exceptions import DeleteFailed
from regmirror.services.registry_client import (
    DOCKER_MANIFEST_V2,
    OCI_INDEX_V1,
    OCI_MANIFEST_V1,
    normalize_registry_url,
)
from regmirror.utils.error_handling import log_and_continue

DELETE_ACCEPT = ", ".join([DOCKER_MANIFEST_V2, OCI_INDEX_V1, OCI_MANIFEST_V1])


def clean_digest(digest: str) -> str:
    """Strip stray quoting that sometimes survives from header values."""
    return digest.strip().replace('"', "").replace("'", "")


class DeletionCoordinator:
    """Deletes a tag's manifest from the registry, then resyncs the cache.

    ``delete_tag`` never raises: every failure is logged and reported as
    False, including a failed resync after a successful delete (the cache
    may then be stale).
    """

    def __init__(
        self,
        settings: Settings,
        resync: Callable[[], Awaitable[Any]],
        logger: Optional[logging.Logger] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            settings: Registry URL, credentials and timeout
            resync: Coroutine function that refreshes the cache (normally
                RegistrySyncService.sync_now)
            logger: Logger to report through
            http_client: Pre-built client; one is created per call otherwise
        """
        self.settings = settings
        self.resync = resync
        self.logger = logger or logging.getLogger(__name__)
        self._http_client = http_client

    async def _send_delete(self, url: str) -> httpx.Response:
        headers = {"Accept": DELETE_ACCEPT}
        if self._http_client is not None:
            return await self._http_client.delete(url, headers=headers, auth=self.settings.basic_auth)

        async with httpx.AsyncClient(timeout=self.settings.request_timeout) as client:
            return await client.delete(url, headers=headers, auth=self.settings.basic_auth)

    async def delete_tag(self, repo: str, content_digest: str, registry_url: Optional[str] = None) -> bool:
        """Delete a manifest by digest and refresh the cache.

        Args:
            repo: Repository path (e.g., "ofkm/caddy")
            content_digest: Manifest digest of the tag
            registry_url: Registry base URL (defaults to the configured one)

        Returns:
            True if the registry accepted the delete and the resync succeeded
        """
        base = normalize_registry_url(registry_url or self.settings.registry_url)
        digest = clean_digest(content_digest)
        manifest_url = f"{base}/v2/{repo}/manifests/{digest}"

        try:
            self.logger.info(f"Deleting manifest: {manifest_url}")
            response = await self._send_delete(manifest_url)

            if response.status_code != 202:
                self.logger.error(
                    f"Failed to delete manifest {repo}@{digest}: {response.status_code} {response.text}"
                )
                raise DeleteFailed(response.status_code, response.text)
        except DeleteFailed as e:
            log_and_continue(self.logger, e, f"Delete of {repo}@{digest} rejected", log_level="error")
            return False
        except httpx.HTTPError as e:
            log_and_continue(self.logger, e, f"Error in delete operation for {repo}@{digest}", log_level="error")
            return False
        except Exception as e:
            log_and_continue(self.logger, e, f"Unexpected error deleting {repo}@{digest}", log_level="error")
            return False

        try:
            self.logger.info(f"Triggering sync after deleting {repo}@{digest}")
            await self.resync()
        except Exception as e:
            log_and_continue(
                self.logger, e, f"Failed to sync after deletion of {repo}@{digest}; cache may be stale",
                log_level="error",
            )
            return False

        self.logger.info(f"Successfully deleted and synced manifest for {repo}")
        return True
