"""Internal models used while rendering manifests."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "FieldMapping",
    "ManifestContext",
]


@dataclass(frozen=True)
class FieldMapping:
    """Rule setting one field of every rendered object of a kind.

    The value is taken from ``value`` unless it is unset (`None` or the empty
    string), in which case ``default`` is used. If both are unset, the rule
    does nothing.
    """

    value: Any
    """Value derived from the Distribution."""

    target_path: str
    """Path of the field, such as ``/spec/ports/0/port``."""

    target_kind: str
    """Kind of object to which the rule applies."""

    default: Any = None
    """Value to use if ``value`` is unset."""

    create_if_missing: bool = False
    """Whether to create the field, and any missing parents, if absent."""

    def resolve(self) -> Any:
        """Return the value to set, or `None` if the rule should be skipped."""
        if self.value is None or self.value == "":
            return self.default
        return self.value


@dataclass
class ManifestContext:
    """Run-time inputs for rendering that templates cannot provide.

    Built fresh for every reconcile and discarded afterwards.
    """

    image: str
    """Resolved container image of the server."""

    pod_spec: dict[str, Any]
    """Fields merged into the pod spec of the Deployment template."""

    hashes: dict[str, str] = field(default_factory=dict)
    """Pod template annotations holding content hashes of configuration.

    Keys are annotation names and values are the hashes. A change in any of
    them changes the pod template and thus triggers a rollout.
    """
