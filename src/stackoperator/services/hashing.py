"""Content hashes of configuration consumed by the server pods."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from typing import Any

__all__ = ["config_map_hash", "content_hash"]


def content_hash(
    name: str, resource_version: str, keys: Iterable[str] = ()
) -> str:
    """Compute the rollout trigger hash of a configuration source.

    Parameters
    ----------
    name
        Name of the ConfigMap.
    resource_version
        Resource version of the ConfigMap, which changes whenever its
        contents change.
    keys
        Keys of the ConfigMap consumed by the server, if only some are used.
        The order does not matter.

    Returns
    -------
    str
        Short hexadecimal digest.
    """
    digest = hashlib.sha256()
    digest.update(name.encode())
    digest.update(b"\0")
    digest.update(resource_version.encode())
    for key in sorted(keys):
        digest.update(b"\0")
        digest.update(key.encode())
    return digest.hexdigest()[:16]


def config_map_hash(
    config_map: dict[str, Any], keys: Iterable[str] = ()
) -> str:
    """Compute the rollout trigger hash of a ConfigMap object.

    Parameters
    ----------
    config_map
        ConfigMap as returned by Kubernetes.
    keys
        Keys of the ConfigMap consumed by the server, if only some are used.

    Returns
    -------
    str
        Short hexadecimal digest.
    """
    metadata = config_map.get("metadata", {})
    name = metadata.get("name", "")
    version = metadata.get("resourceVersion") or ""
    return content_hash(name, version, keys)
