"""Namespace grouping for flat registry catalogs."""

from typing import Dict, Iterable, List, Optional

DEFAULT_NAMESPACE = "library"


def get_namespace(full_name: Optional[str]) -> str:
    """Return the namespace of a repository name.

    The namespace is the first path segment ("ofkm/caddy" -> "ofkm").
    Unqualified names fall under "library", as on Docker Hub.
    """
    if not full_name or "/" not in full_name:
        return DEFAULT_NAMESPACE
    return full_name.split("/")[0]


def group_by_namespace(names: Iterable[str]) -> Dict[str, List[str]]:
    """Group repository names by namespace, keeping catalog order.

    >>> group_by_namespace(["alpine", "ofkm/caddy", "ofkm/app"])
    {'library': ['alpine'], 'ofkm': ['ofkm/caddy', 'ofkm/app']}
    """
    grouped: Dict[str, List[str]] = {}
    for name in names:
        grouped.setdefault(get_namespace(name), []).append(name)
    return grouped
