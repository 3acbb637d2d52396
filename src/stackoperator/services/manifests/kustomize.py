"""Expansion of kustomization directories into rendered objects.

Only the subset of kustomize needed by the operator templates is supported:
``resources`` (files or nested kustomization directories), ``namespace``,
``namePrefix``, ``nameSuffix``, ``labels``, ``commonLabels``, and
``commonAnnotations``. Any other field is rejected rather than ignored so that
templates do not silently render differently from what their authors expect.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from ...exceptions import ManifestError
from ...models.domain.resources import Resource, ResourceMap
from .transformers import (
    AnnotationTransformer,
    LabelTransformer,
    NamePrefixTransformer,
    NamespaceTransformer,
    Transformer,
)

__all__ = ["KUSTOMIZATION_FILES", "Kustomizer", "find_kustomization"]

KUSTOMIZATION_FILES = (
    "kustomization.yaml",
    "kustomization.yml",
    "Kustomization",
)
"""Recognized names of the kustomization file, in order of preference."""

_SUPPORTED_FIELDS = frozenset(
    {
        "apiVersion",
        "commonAnnotations",
        "commonLabels",
        "kind",
        "labels",
        "namePrefix",
        "nameSuffix",
        "namespace",
        "resources",
    }
)


def find_kustomization(path: Path) -> Path | None:
    """Find the kustomization file in a directory.

    Parameters
    ----------
    path
        Directory to search.

    Returns
    -------
    Path or None
        Path to the kustomization file, or `None` if there is none.
    """
    for name in KUSTOMIZATION_FILES:
        candidate = path / name
        if candidate.is_file():
            return candidate
    return None


class Kustomizer:
    """Expand a kustomization directory into a collection of objects."""

    def build(self, path: Path) -> ResourceMap:
        """Build the objects described by a kustomization directory.

        Parameters
        ----------
        path
            Directory containing a kustomization file.

        Returns
        -------
        ResourceMap
            Expanded objects with the transformations of the kustomization
            applied.

        Raises
        ------
        ManifestError
            Raised if the kustomization file or a resource it references is
            missing or malformed.
        """
        return self._build(path.resolve(), seen=set())

    def _build(self, path: Path, *, seen: set[Path]) -> ResourceMap:
        if path in seen:
            raise ManifestError(f"Kustomization cycle through {path}")
        seen = seen | {path}

        kustomization_path = find_kustomization(path)
        if not kustomization_path:
            raise ManifestError(f"No kustomization file in {path}")
        kustomization = self._load_kustomization(kustomization_path)

        resources = ResourceMap()
        for entry in kustomization.get("resources") or []:
            if not isinstance(entry, str):
                msg = f"Invalid resource entry {entry!r} in {path}"
                raise ManifestError(msg)
            resource_path = (path / entry).resolve()
            if resource_path.is_dir():
                children = self._build(resource_path, seen=seen)
            elif resource_path.is_file():
                children = self._load_resources(resource_path)
            else:
                msg = f"Resource {entry} referenced by {path} not found"
                raise ManifestError(msg)
            for child in children:
                try:
                    resources.add(child)
                except ValueError as e:
                    raise ManifestError(f"{e!s} in {path}") from e

        for transformer in self._transformers(kustomization, path):
            transformer.transform(resources)
        return resources

    def _load_kustomization(self, path: Path) -> dict[str, Any]:
        try:
            with path.open("r") as f:
                kustomization = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ManifestError(f"Cannot parse {path}: {e!s}") from e
        if kustomization is None:
            return {}
        if not isinstance(kustomization, dict):
            raise ManifestError(f"{path} is not a mapping")
        unsupported = set(kustomization.keys()) - _SUPPORTED_FIELDS
        if unsupported:
            fields = ", ".join(sorted(unsupported))
            raise ManifestError(f"Unsupported fields in {path}: {fields}")
        return kustomization

    def _load_resources(self, path: Path) -> list[Resource]:
        try:
            with path.open("r") as f:
                documents = list(yaml.safe_load_all(f))
        except yaml.YAMLError as e:
            raise ManifestError(f"Cannot parse {path}: {e!s}") from e

        resources = []
        for document in documents:
            if document is None:
                continue
            if not isinstance(document, dict):
                raise ManifestError(f"Document in {path} is not a mapping")
            bodies = [document]
            if document.get("kind") == "List":
                bodies = document.get("items") or []
            for body in bodies:
                try:
                    resources.append(Resource(body))
                except ValueError as e:
                    msg = f"Invalid object in {path}: {e!s}"
                    raise ManifestError(msg) from e
        return resources

    def _transformers(
        self, kustomization: dict[str, Any], path: Path
    ) -> list[Transformer]:
        transformers: list[Transformer] = []
        prefix = kustomization.get("namePrefix") or ""
        suffix = kustomization.get("nameSuffix") or ""
        if prefix or suffix:
            transformers.append(NamePrefixTransformer(prefix, suffix))
        if kustomization.get("namespace"):
            namespace = kustomization["namespace"]
            transformers.append(NamespaceTransformer(namespace))
        if kustomization.get("commonLabels"):
            labels = kustomization["commonLabels"]
            transformers.append(
                LabelTransformer(labels, include_selectors=True)
            )
        for entry in kustomization.get("labels") or []:
            if not isinstance(entry, dict) or "pairs" not in entry:
                raise ManifestError(f"Invalid labels entry in {path}")
            transformers.append(
                LabelTransformer(
                    entry["pairs"],
                    include_selectors=entry.get("includeSelectors", False),
                    include_templates=entry.get("includeTemplates", False),
                )
            )
        if kustomization.get("commonAnnotations"):
            annotations = kustomization["commonAnnotations"]
            transformers.append(AnnotationTransformer(annotations))
        return transformers
