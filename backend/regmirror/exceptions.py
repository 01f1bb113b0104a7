"""Custom exceptions for regmirror."""

from typing import Optional


class RegistryMirrorError(Exception):
    """Base class for all registry mirror errors."""
    pass


class NetworkError(RegistryMirrorError):
    """Raised when a registry request fails or times out.

    Covers transport errors, timeouts and non-success HTTP status codes.
    Callers treat the affected item as absent rather than failing siblings.
    """

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        detail = f" (status {status_code})" if status_code is not None else ""
        super().__init__(f"Request to {url} failed{detail}: {message}")


class ManifestError(RegistryMirrorError):
    """Raised when a manifest lacks the config descriptor needed for metadata."""

    def __init__(self, repo: str, reference: str, message: str = "Config digest not found in manifest"):
        self.repo = repo
        self.reference = reference
        super().__init__(f"{repo}:{reference}: {message}")


class DecodeError(RegistryMirrorError):
    """Raised when a registry response or cached field is not valid JSON."""
    pass


class ConstraintError(RegistryMirrorError):
    """Raised when an insert violates a uniqueness constraint in the cache."""
    pass


class DeleteFailed(RegistryMirrorError):
    """Raised when the registry refuses a manifest deletion.

    Only HTTP 202 counts as success for a manifest DELETE.
    """

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Failed to delete manifest: {status_code}")
