"""Rendering of the manifest templates for a Distribution."""

from __future__ import annotations

from pathlib import Path

from ...constants import DEFAULT_OPERATOR_NAMESPACE
from ...exceptions import ManifestError
from ...models.domain.manifests import ManifestContext
from ...models.domain.operatorconfig import OperatorConfig
from ...models.domain.resources import ResourceMap
from ...models.v1.distribution import Distribution
from .kustomize import Kustomizer, find_kustomization
from .mappings import build_field_mappings
from .transformers import (
    DeploymentContextTransformer,
    FieldMappingTransformer,
    NamePrefixTransformer,
    NamespaceTransformer,
    NetworkPolicyTransformer,
    Transformer,
)

__all__ = ["ManifestRenderer", "excluded_kinds"]


def excluded_kinds(
    distribution: Distribution, operator_config: OperatorConfig
) -> set[str]:
    """Determine which rendered kinds are disabled for a Distribution.

    Parameters
    ----------
    distribution
        Distribution being reconciled.
    operator_config
        Operator-wide settings.

    Returns
    -------
    set of str
        Kinds that must not exist for this Distribution.
    """
    spec = distribution.spec
    excluded = set()
    if not spec.server.storage:
        excluded.add("PersistentVolumeClaim")
    if not operator_config.enable_network_policy:
        excluded.add("NetworkPolicy")
    if not distribution.has_ports:
        excluded.update({"Service", "Ingress"})
    if not (spec.network and spec.network.expose_route):
        excluded.add("Ingress")
    if not distribution.autoscaling_enabled:
        excluded.add("HorizontalPodAutoscaler")
    if not spec.server.pod_disruption_budget and spec.replicas <= 1:
        excluded.add("PodDisruptionBudget")
    return excluded


class ManifestRenderer:
    """Render the manifest templates into objects for one Distribution.

    Rendering reads only the template directory and has no other side
    effects, so it can be repeated freely.

    Parameters
    ----------
    manifests_path
        Template directory. If it contains no kustomization file, its
        ``default`` subdirectory is used instead.
    operator_namespace
        Namespace in which the operator runs, which is always allowed to
        reach the server through the network policy.
    """

    def __init__(
        self,
        manifests_path: Path,
        operator_namespace: str = DEFAULT_OPERATOR_NAMESPACE,
    ) -> None:
        self._path = manifests_path
        self._operator_namespace = operator_namespace
        self._kustomizer = Kustomizer()

    def render(
        self,
        distribution: Distribution,
        context: ManifestContext | None = None,
    ) -> ResourceMap:
        """Render the objects for a Distribution.

        Parameters
        ----------
        distribution
            Distribution to render.
        context
            Run-time inputs for the Deployment. If not given, the Deployment
            is rendered from the template alone.

        Returns
        -------
        ResourceMap
            Rendered objects, including kinds that may be disabled for this
            Distribution.

        Raises
        ------
        ManifestError
            Raised if a template is missing or malformed.
        """
        resources = self._kustomizer.build(self._base_path())

        # The Deployment name must stay stable, so it is set by a field
        # mapping rather than derived from the template name.
        prefix = f"{distribution.name}-"
        transformers: list[Transformer] = [
            NamePrefixTransformer(prefix, exclude_kinds=["Deployment"]),
            NamespaceTransformer(distribution.namespace),
            FieldMappingTransformer(build_field_mappings(distribution)),
            NetworkPolicyTransformer(distribution, self._operator_namespace),
        ]
        if context:
            transformers.append(DeploymentContextTransformer(context))
        for transformer in transformers:
            transformer.transform(resources)
        return resources

    def _base_path(self) -> Path:
        if find_kustomization(self._path):
            return self._path
        default = self._path / "default"
        if default.is_dir() and find_kustomization(default):
            return default
        raise ManifestError(f"No kustomization file in {self._path}")
