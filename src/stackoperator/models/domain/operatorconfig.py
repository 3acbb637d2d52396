"""Operator-wide settings stored in the operator ConfigMap."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "FeatureFlag",
    "FeatureFlags",
    "OperatorConfig",
    "is_valid_image_reference",
]

_IMAGE_REFERENCE_REGEX = re.compile(
    # Optional registry host with optional port.
    r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)*(?::[0-9]+)?/)?"
    # Lowercase repository path components.
    r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
    r"(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*"
    # Optional tag and digest.
    r"(?::[\w][\w.-]{0,127})?"
    r"(?:@[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-fA-F0-9]{32,})?$"
)


def is_valid_image_reference(reference: str) -> bool:
    """Whether a string is a syntactically valid container image reference.

    Parameters
    ----------
    reference
        Image reference such as ``quay.io/org/image:tag`` or
        ``docker.io/org/image@sha256:...``.

    Returns
    -------
    bool
        `True` if the reference could be pulled by a container runtime.
    """
    if not reference or len(reference) > 4096:
        return False
    return bool(_IMAGE_REFERENCE_REGEX.match(reference))


class FeatureFlag(BaseModel):
    """Setting for one optional feature."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(False, title="Whether the feature is enabled")


class FeatureFlags(BaseModel):
    """Feature flags stored under the ``featureFlags`` key."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    enable_network_policy: FeatureFlag = Field(
        FeatureFlag(),
        title="Network policy",
        description="Whether to create a NetworkPolicy for each Distribution",
        alias="enableNetworkPolicy",
    )


@dataclass(frozen=True)
class OperatorConfig:
    """Immutable snapshot of the operator ConfigMap.

    A new snapshot is created whenever the ConfigMap changes, and the
    reconciler using the old one is replaced.
    """

    feature_flags: FeatureFlags = field(default_factory=FeatureFlags)
    """Parsed feature flags."""

    image_overrides: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    """Images that replace catalog entries, keyed by catalog name."""

    @property
    def enable_network_policy(self) -> bool:
        """Whether NetworkPolicy objects should be created."""
        return self.feature_flags.enable_network_policy.enabled
