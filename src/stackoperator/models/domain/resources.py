"""Rendered Kubernetes objects and collections of them.

Rendered manifests are kept as trees of JSON-compatible values: mappings with
string keys, sequences, and scalar leaves (strings, numbers, booleans, and
`None`). `Resource` wraps one such tree and provides path-based navigation so
that transformations can be written without knowledge of the object kind.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Self

__all__ = [
    "Resource",
    "ResourceKey",
    "ResourceMap",
    "parse_path",
]


def parse_path(path: str) -> list[str]:
    """Split a JSON-pointer-like path into its components.

    Both ``/spec/replicas`` and ``spec/replicas`` are accepted. The escapes
    ``~1`` (for ``/``) and ``~0`` (for ``~``) are decoded so that annotation
    and label keys containing slashes can be addressed.

    Parameters
    ----------
    path
        Path to split.

    Returns
    -------
    list of str
        Path components, still as strings even if they are list indices.

    Raises
    ------
    ValueError
        Raised if the path is empty.
    """
    tokens = path.strip("/").split("/") if path.strip("/") else []
    if not tokens:
        raise ValueError("Empty resource path")
    return [t.replace("~1", "/").replace("~0", "~") for t in tokens]


def _index(token: str, length: int, *, path: str) -> int:
    """Convert a path token to an index into a sequence of some length."""
    if token == "-":
        return length
    try:
        index = int(token)
    except ValueError:
        msg = f"Path {path} uses non-integer index {token} into a list"
        raise ValueError(msg) from None
    if index < 0 or index > length:
        msg = f"Path {path} index {index} out of range"
        raise ValueError(msg)
    return index


def _is_index(token: str) -> bool:
    return token == "-" or token.isdigit()


@dataclass(frozen=True, slots=True)
class ResourceKey:
    """Identity of a rendered object within a `ResourceMap`."""

    kind: str
    """Kind of the object."""

    namespace: str | None
    """Namespace of the object, or `None` for cluster-scoped objects."""

    name: str
    """Name of the object."""

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.name}"
        return f"{self.kind} {self.name}"


class Resource:
    """A single Kubernetes object as a tree of JSON-compatible values.

    Parameters
    ----------
    body
        Object body. It is used directly, not copied.

    Raises
    ------
    ValueError
        Raised if the object is missing ``apiVersion``, ``kind``, or
        ``metadata.name``.
    """

    def __init__(self, body: dict[str, Any]) -> None:
        if not isinstance(body, dict):
            raise ValueError("Kubernetes object is not a mapping")
        for field in ("apiVersion", "kind"):
            if not isinstance(body.get(field), str) or not body[field]:
                raise ValueError(f"Kubernetes object has no {field}")
        metadata = body.setdefault("metadata", {})
        if not isinstance(metadata, dict) or not metadata.get("name"):
            kind = body["kind"]
            raise ValueError(f"{kind} object has no metadata.name")
        self._body = body

    @property
    def api_version(self) -> str:
        """API version of the object."""
        return self._body["apiVersion"]

    @property
    def kind(self) -> str:
        """Kind of the object."""
        return self._body["kind"]

    @property
    def name(self) -> str:
        """Name of the object."""
        return self._body["metadata"]["name"]

    @name.setter
    def name(self, name: str) -> None:
        self._body["metadata"]["name"] = name

    @property
    def namespace(self) -> str | None:
        """Namespace of the object, if set."""
        return self._body["metadata"].get("namespace")

    @namespace.setter
    def namespace(self, namespace: str | None) -> None:
        if namespace is None:
            self._body["metadata"].pop("namespace", None)
        else:
            self._body["metadata"]["namespace"] = namespace

    @property
    def labels(self) -> dict[str, str]:
        """Labels of the object, created empty if missing."""
        return self._body["metadata"].setdefault("labels", {})

    @property
    def annotations(self) -> dict[str, str]:
        """Annotations of the object, created empty if missing."""
        return self._body["metadata"].setdefault("annotations", {})

    @property
    def owner_references(self) -> list[dict[str, Any]]:
        """Owner references of the object, empty if there are none."""
        return self._body["metadata"].get("ownerReferences") or []

    @property
    def key(self) -> ResourceKey:
        """Identity of the object within a `ResourceMap`."""
        return ResourceKey(
            kind=self.kind, namespace=self.namespace, name=self.name
        )

    def copy(self) -> Resource:
        """Return a deep copy of the object."""
        return Resource(copy.deepcopy(self._body))

    def get(self, path: str, default: Any = None) -> Any:
        """Retrieve the value at a path.

        Parameters
        ----------
        path
            Path in the form accepted by `parse_path`.
        default
            Value to return if the path does not exist.

        Returns
        -------
        Any
            Value at that path, or the default.
        """
        node: Any = self._body
        for token in parse_path(path):
            if isinstance(node, dict):
                if token not in node:
                    return default
                node = node[token]
            elif isinstance(node, list):
                if not token.isdigit() or int(token) >= len(node):
                    return default
                node = node[int(token)]
            else:
                return default
        return node

    def has(self, path: str) -> bool:
        """Whether a value exists at the given path."""
        sentinel = object()
        return self.get(path, sentinel) is not sentinel

    def set(self, path: str, value: Any, *, create: bool = True) -> bool:
        """Set the value at a path.

        Intermediate nodes are created as needed if ``create`` is true. A new
        intermediate node is a list if the following path component is an
        integer index or ``-`` and a mapping otherwise. An index equal to the
        length of a list, or ``-``, appends to that list.

        Parameters
        ----------
        path
            Path in the form accepted by `parse_path`.
        value
            Value to store. It is stored directly, not copied.
        create
            Whether to create missing nodes along the path, including the
            final one. If false and any part of the path is missing, the
            object is not changed.

        Returns
        -------
        bool
            `True` if the value was stored, `False` if the path did not exist
            and ``create`` was false.

        Raises
        ------
        ValueError
            Raised if the path traverses a scalar or uses an invalid index.
        """
        tokens = parse_path(path)
        node: Any = self._body
        for i, token in enumerate(tokens[:-1]):
            following = tokens[i + 1]
            if isinstance(node, dict):
                if token not in node or node[token] is None:
                    if not create:
                        return False
                    node[token] = [] if _is_index(following) else {}
                node = node[token]
            elif isinstance(node, list):
                index = _index(token, len(node), path=path)
                if index == len(node):
                    if not create:
                        return False
                    node.append([] if _is_index(following) else {})
                node = node[index]
            else:
                msg = f"Path {path} traverses a scalar at {token}"
                raise ValueError(msg)
        last = tokens[-1]
        if isinstance(node, dict):
            if last not in node and not create:
                return False
            node[last] = value
        elif isinstance(node, list):
            index = _index(last, len(node), path=path)
            if index == len(node):
                if not create:
                    return False
                node.append(value)
            else:
                node[index] = value
        else:
            msg = f"Path {path} traverses a scalar at {last}"
            raise ValueError(msg)
        return True

    def to_dict(self) -> dict[str, Any]:
        """Return the underlying object body.

        Returns
        -------
        dict
            The object tree itself, not a copy.
        """
        return self._body

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Resource):
            return NotImplemented
        return self._body == other._body

    def __repr__(self) -> str:
        return f"Resource({self.key!s})"


class ResourceMap:
    """Ordered collection of rendered objects, unique by `ResourceKey`.

    Objects are stored in insertion order. Keys are computed from the current
    state of each object rather than stored, so renaming an object in place
    (such as when adding a name prefix) changes its key.

    Parameters
    ----------
    resources
        Initial objects.

    Raises
    ------
    ValueError
        Raised if two objects have the same key.
    """

    def __init__(self, resources: Iterable[Resource] = ()) -> None:
        self._resources: list[Resource] = []
        for resource in resources:
            self.add(resource)

    @classmethod
    def from_dicts(cls, bodies: Iterable[dict[str, Any]]) -> Self:
        """Construct a map from a sequence of object bodies."""
        return cls(Resource(b) for b in bodies)

    def add(self, resource: Resource) -> None:
        """Add an object to the map.

        Raises
        ------
        ValueError
            Raised if an object with the same key is already present.
        """
        if resource.key in self:
            raise ValueError(f"Duplicate object {resource.key!s}")
        self._resources.append(resource)

    def by_kind(self, kind: str) -> list[Resource]:
        """Return all objects of the given kind."""
        return [r for r in self._resources if r.kind == kind]

    def check_unique(self) -> None:
        """Verify that no two objects share a key.

        Renaming objects in place can cause collisions, so this should be
        called after any pass that changes names or namespaces.

        Raises
        ------
        ValueError
            Raised if two objects have the same key.
        """
        seen = set()
        for resource in self._resources:
            if resource.key in seen:
                raise ValueError(f"Duplicate object {resource.key!s}")
            seen.add(resource.key)

    def get(self, key: ResourceKey) -> Resource | None:
        """Return the object with the given key, if present."""
        for resource in self._resources:
            if resource.key == key:
                return resource
        return None

    def kinds(self) -> set[str]:
        """Return the set of kinds present in the map."""
        return {r.kind for r in self._resources}

    def without_kinds(self, kinds: Iterable[str]) -> ResourceMap:
        """Return a new map with all objects of the given kinds removed.

        The objects themselves are shared with the original map.
        """
        excluded = set(kinds)
        return ResourceMap(
            r for r in self._resources if r.kind not in excluded
        )

    def __contains__(self, key: object) -> bool:
        return any(r.key == key for r in self._resources)

    def __iter__(self) -> Iterator[Resource]:
        return iter(list(self._resources))

    def __len__(self) -> int:
        return len(self._resources)
