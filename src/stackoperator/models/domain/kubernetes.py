"""Data types for interacting with Kubernetes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Self

__all__ = [
    "ObjectKey",
    "PropagationPolicy",
    "ResourceScope",
    "WatchEventType",
    "split_api_version",
]


@dataclass(frozen=True, slots=True)
class ObjectKey:
    """Identity of a namespaced Kubernetes object.

    Used as the key of the reconcile work queue and of the index of
    ConfigMaps referenced by Distributions.
    """

    namespace: str
    """Namespace of the object."""

    name: str
    """Name of the object."""

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> Self:
        """Construct the key of a Kubernetes object in dictionary form.

        Parameters
        ----------
        obj
            Kubernetes object as returned by the API.

        Returns
        -------
        ObjectKey
            Key identifying that object.
        """
        metadata = obj["metadata"]
        namespace = metadata.get("namespace", "")
        return cls(namespace=namespace, name=metadata["name"])

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class PropagationPolicy(Enum):
    """Possible values for the ``propagationPolicy`` parameter to delete."""

    FOREGROUND = "Foreground"
    BACKGROUND = "Background"
    ORPHAN = "Orphan"


class ResourceScope(Enum):
    """Whether a kind of Kubernetes object lives in a namespace."""

    NAMESPACED = "Namespaced"
    CLUSTER = "Cluster"


class WatchEventType(Enum):
    """Possible values of the ``type`` field of Kubernetes watch events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


def split_api_version(api_version: str) -> tuple[str, str]:
    """Split an ``apiVersion`` field into group and version.

    Parameters
    ----------
    api_version
        API version such as ``apps/v1`` or ``v1``.

    Returns
    -------
    tuple of str
        Group (empty for the core group) and version.
    """
    if "/" in api_version:
        group, version = api_version.split("/", 1)
        return group, version
    return "", api_version
