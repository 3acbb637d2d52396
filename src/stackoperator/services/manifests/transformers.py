"""Passes that modify a collection of rendered objects in place."""

from __future__ import annotations

import copy
from abc import ABCMeta, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any, override

from ...constants import (
    DEFAULT_OPERATOR_NAMESPACE,
    DEFAULT_SERVER_PORT,
    INSTANCE_LABEL,
    PART_OF_LABEL,
    PART_OF_VALUE,
)
from ...exceptions import ManifestError
from ...models.domain.manifests import FieldMapping, ManifestContext
from ...models.domain.resources import ResourceMap
from ...models.v1.distribution import Distribution

__all__ = [
    "CLUSTER_SCOPED_KINDS",
    "AnnotationTransformer",
    "DeploymentContextTransformer",
    "FieldMappingTransformer",
    "LabelTransformer",
    "NamePrefixTransformer",
    "NamespaceTransformer",
    "NetworkPolicyTransformer",
    "Transformer",
]

CLUSTER_SCOPED_KINDS = frozenset(
    {
        "APIService",
        "ClusterRole",
        "ClusterRoleBinding",
        "CustomResourceDefinition",
        "IngressClass",
        "MutatingWebhookConfiguration",
        "Namespace",
        "PersistentVolume",
        "PriorityClass",
        "StorageClass",
        "ValidatingWebhookConfiguration",
    }
)
"""Kinds treated as cluster-scoped while rendering.

Rendering does not talk to the API server, so this static list decides which
objects the namespace pass leaves alone. The apply engine resolves the real
scope of every kind from the API server before touching the cluster.
"""

_ROUTER_NAMESPACE_LABEL = "network.openshift.io/policy-group"
_NAMESPACE_NAME_LABEL = "kubernetes.io/metadata.name"

_TEMPLATE_KINDS = frozenset(
    {"DaemonSet", "Deployment", "Job", "ReplicaSet", "StatefulSet"}
)
_SELECTOR_PATHS = {
    "DaemonSet": "/spec/selector/matchLabels",
    "Deployment": "/spec/selector/matchLabels",
    "NetworkPolicy": "/spec/podSelector/matchLabels",
    "PodDisruptionBudget": "/spec/selector/matchLabels",
    "ReplicaSet": "/spec/selector/matchLabels",
    "Service": "/spec/selector",
    "StatefulSet": "/spec/selector/matchLabels",
}


class Transformer(metaclass=ABCMeta):
    """A pass over all rendered objects."""

    @abstractmethod
    def transform(self, resources: ResourceMap) -> None:
        """Modify the objects in place.

        Parameters
        ----------
        resources
            Rendered objects.

        Raises
        ------
        ManifestError
            Raised if the objects could not be transformed.
        """


class NamePrefixTransformer(Transformer):
    """Add a prefix and suffix to the names of objects.

    Parameters
    ----------
    prefix
        Prefix to add.
    suffix
        Suffix to add.
    exclude_kinds
        Kinds whose names are left unchanged.
    """

    def __init__(
        self,
        prefix: str,
        suffix: str = "",
        *,
        exclude_kinds: Iterable[str] = (),
    ) -> None:
        self._prefix = prefix
        self._suffix = suffix
        self._exclude = frozenset(exclude_kinds)

    @override
    def transform(self, resources: ResourceMap) -> None:
        for resource in resources:
            if resource.kind in self._exclude:
                continue
            resource.name = f"{self._prefix}{resource.name}{self._suffix}"
        _check_unique(resources)


class NamespaceTransformer(Transformer):
    """Place all namespaced objects in one namespace.

    ServiceAccount subjects of role bindings are moved along with the
    ServiceAccounts they refer to.

    Parameters
    ----------
    namespace
        Target namespace.
    """

    def __init__(self, namespace: str) -> None:
        self._namespace = namespace

    @override
    def transform(self, resources: ResourceMap) -> None:
        for resource in resources:
            if resource.kind in ("ClusterRoleBinding", "RoleBinding"):
                for subject in resource.get("/subjects", None) or []:
                    if subject.get("kind") == "ServiceAccount":
                        subject["namespace"] = self._namespace
            if resource.kind in CLUSTER_SCOPED_KINDS:
                resource.namespace = None
            else:
                resource.namespace = self._namespace
        _check_unique(resources)


class LabelTransformer(Transformer):
    """Add labels to objects.

    Parameters
    ----------
    labels
        Labels to add.
    include_selectors
        Whether to also add the labels to label selectors and pod templates.
        This must not be used for labels that may change, since the selector
        of a Deployment cannot be changed after creation.
    include_templates
        Whether to also add the labels to pod templates.
    """

    def __init__(
        self,
        labels: Mapping[str, str],
        *,
        include_selectors: bool = False,
        include_templates: bool = False,
    ) -> None:
        self._labels = dict(labels)
        self._selectors = include_selectors
        self._templates = include_selectors or include_templates

    @override
    def transform(self, resources: ResourceMap) -> None:
        for resource in resources:
            resource.labels.update(self._labels)
            if self._templates and resource.kind in _TEMPLATE_KINDS:
                path = "/spec/template/metadata/labels"
                labels = resource.get(path) or {}
                resource.set(path, {**labels, **self._labels})
            if self._selectors and resource.kind in _SELECTOR_PATHS:
                path = _SELECTOR_PATHS[resource.kind]
                selector = resource.get(path) or {}
                resource.set(path, {**selector, **self._labels})


class AnnotationTransformer(Transformer):
    """Add annotations to objects and their pod templates.

    Parameters
    ----------
    annotations
        Annotations to add.
    """

    def __init__(self, annotations: Mapping[str, str]) -> None:
        self._annotations = dict(annotations)

    @override
    def transform(self, resources: ResourceMap) -> None:
        for resource in resources:
            resource.annotations.update(self._annotations)
            if resource.kind in _TEMPLATE_KINDS:
                path = "/spec/template/metadata/annotations"
                annotations = resource.get(path) or {}
                resource.set(path, {**annotations, **self._annotations})


class FieldMappingTransformer(Transformer):
    """Apply field mapping rules to objects of the matching kinds.

    A rule whose resolved value is `None` does nothing. A rule that may not
    create its field only overwrites fields already present in the template.
    Mappings and lists are copied before being stored so that objects never
    share mutable values.

    Parameters
    ----------
    mappings
        Rules to apply, in order. Later rules win for the same path.
    """

    def __init__(self, mappings: Iterable[FieldMapping]) -> None:
        self._mappings = list(mappings)

    @override
    def transform(self, resources: ResourceMap) -> None:
        for mapping in self._mappings:
            value = mapping.resolve()
            if value is None:
                continue
            for resource in resources.by_kind(mapping.target_kind):
                try:
                    resource.set(
                        mapping.target_path,
                        copy.deepcopy(value),
                        create=mapping.create_if_missing,
                    )
                except ValueError as e:
                    msg = f"Cannot set field of {resource.key!s}: {e!s}"
                    raise ManifestError(msg) from e
        _check_unique(resources)


class NetworkPolicyTransformer(Transformer):
    """Build the selector and ingress rule of the NetworkPolicy.

    Traffic to the server port is allowed from pods of the same application
    in the same namespace, from the operator namespace, and from whatever the
    network settings of the Distribution allow. A namespace entry of ``*``
    replaces all peers with one that matches every namespace.

    Parameters
    ----------
    distribution
        Distribution being rendered.
    operator_namespace
        Namespace in which the operator runs.
    """

    def __init__(
        self,
        distribution: Distribution,
        operator_namespace: str = DEFAULT_OPERATOR_NAMESPACE,
    ) -> None:
        self._distribution = distribution
        self._operator_namespace = operator_namespace

    @override
    def transform(self, resources: ResourceMap) -> None:
        name = self._distribution.name
        selector = {"app": "llama-stack", INSTANCE_LABEL: name}
        # A port of 0 disables the Service but the policy needs a real port.
        port = self._distribution.container_port or DEFAULT_SERVER_PORT
        rule = {
            "from": self._build_peers(),
            "ports": [{"protocol": "TCP", "port": port}],
        }
        for resource in resources.by_kind("NetworkPolicy"):
            resource.set("/spec/podSelector/matchLabels", dict(selector))
            resource.set("/spec/policyTypes", ["Ingress"])
            resource.set("/spec/ingress", [copy.deepcopy(rule)])

    def _build_peers(self) -> list[dict[str, Any]]:
        network = self._distribution.spec.network
        allowed = network.allowed_from if network else None
        if allowed and "*" in allowed.namespaces:
            return [{"namespaceSelector": {}}]

        peers: list[dict[str, Any]] = [
            {"podSelector": {"matchLabels": {PART_OF_LABEL: PART_OF_VALUE}}},
            _namespace_peer(self._operator_namespace),
        ]
        if allowed:
            peers.extend(_namespace_peer(n) for n in allowed.namespaces)
            for label in allowed.labels:
                expression = {"key": label, "operator": "Exists"}
                selector = {"matchExpressions": [expression]}
                peers.append({"namespaceSelector": selector})
        if network:
            labels = {_ROUTER_NAMESPACE_LABEL: "ingress"}
            peers.append({"namespaceSelector": {"matchLabels": labels}})
        return peers


class DeploymentContextTransformer(Transformer):
    """Merge run-time inputs into the Deployment.

    The pod spec fragment replaces the corresponding top-level fields of the
    pod template spec, the image is set on the first container, and each
    content hash becomes a pod template annotation.

    Parameters
    ----------
    context
        Run-time inputs.
    """

    def __init__(self, context: ManifestContext) -> None:
        self._context = context

    @override
    def transform(self, resources: ResourceMap) -> None:
        deployments = resources.by_kind("Deployment")
        if len(deployments) != 1:
            msg = f"Expected one Deployment template, found {len(deployments)}"
            raise ManifestError(msg)
        deployment = deployments[0]
        pod_spec = deployment.get("/spec/template/spec")
        if not isinstance(pod_spec, dict):
            raise ManifestError("Deployment template has no pod spec")

        pod_spec.update(copy.deepcopy(self._context.pod_spec))
        containers = pod_spec.get("containers") or []
        if containers:
            containers[0]["image"] = self._context.image
        if self._context.hashes:
            path = "/spec/template/metadata/annotations"
            annotations = deployment.get(path) or {}
            annotations.update(self._context.hashes)
            deployment.set(path, annotations)


def _check_unique(resources: ResourceMap) -> None:
    try:
        resources.check_unique()
    except ValueError as e:
        raise ManifestError(f"Rendered objects collide: {e!s}") from e


def _namespace_peer(namespace: str) -> dict[str, Any]:
    labels = {_NAMESPACE_NAME_LABEL: namespace}
    return {"namespaceSelector": {"matchLabels": labels}}
