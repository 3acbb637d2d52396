"""Creation and update of rendered objects in Kubernetes."""

from __future__ import annotations

from typing import Any

from structlog.stdlib import BoundLogger

from ..constants import (
    DISTRIBUTION_KIND,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    PART_OF_LABEL,
    PART_OF_VALUE,
)
from ..exceptions import ServiceMutationError
from ..models.domain.resources import Resource, ResourceKey, ResourceMap
from ..models.v1.distribution import Distribution
from ..storage.kubernetes.objects import KubernetesObjectStorage
from ..timeout import Timeout
from .ownership import get_ownership_checker

__all__ = ["ApplyEngine", "check_service_mutation"]

_CLUSTER_ROLE_API_VERSION = "rbac.authorization.k8s.io/v1"


def check_service_mutation(
    live: dict[str, Any], desired: dict[str, Any], distribution: Distribution
) -> None:
    """Detect manual changes to a Service that applying would undo.

    Ports are matched by name, falling back to the port number for unnamed
    ports, so changing the port of the server is not a mutation.

    Parameters
    ----------
    live
        Service as stored in Kubernetes.
    desired
        Rendered Service.
    distribution
        Distribution being reconciled, for error reporting.

    Raises
    ------
    ServiceMutationError
        Raised if the stored Service has ports the rendered one does not
        declare or if its type was changed.
    """
    live_spec = live.get("spec") or {}
    desired_spec = desired.get("spec") or {}
    service = live.get("metadata", {}).get("name")

    desired_ports = {_port_id(p) for p in desired_spec.get("ports") or []}
    extra = [
        str(_port_id(p))
        for p in live_spec.get("ports") or []
        if _port_id(p) not in desired_ports
    ]
    if extra:
        ports = ", ".join(extra)
        msg = f"Service {service} has unmanaged ports {ports}"
        raise ServiceMutationError(
            msg, namespace=distribution.namespace, name=distribution.name
        )

    live_type = live_spec.get("type", "ClusterIP")
    desired_type = desired_spec.get("type", "ClusterIP")
    if live_type != desired_type:
        msg = f"Service {service} type changed to {live_type}"
        raise ServiceMutationError(
            msg, namespace=distribution.namespace, name=distribution.name
        )


def _port_id(port: dict[str, Any]) -> str | int:
    return port.get("name") or port.get("port", 0)


class ApplyEngine:
    """Create or update rendered objects while respecting ownership.

    Each object is handled independently and every decision is based on the
    current state of the cluster, so applying the same objects again makes
    no further changes and an interrupted apply can simply be repeated.

    Parameters
    ----------
    storage
        Storage for Kubernetes objects of any kind.
    logger
        Logger to use.
    """

    def __init__(
        self, storage: KubernetesObjectStorage, logger: BoundLogger
    ) -> None:
        self._storage = storage
        self._logger = logger

    async def apply(
        self,
        resources: ResourceMap,
        distribution: Distribution,
        timeout: Timeout,
    ) -> None:
        """Apply all objects.

        Parameters
        ----------
        resources
            Rendered objects.
        distribution
            Distribution that owns the objects.
        timeout
            Timeout on the whole operation.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        ScopeResolutionError
            Raised if the scope of a kind could not be determined.
        ServiceMutationError
            Raised if the Service was changed in an incompatible way.
        """
        for resource in resources:
            await self.apply_resource(resource, distribution, timeout)

    async def apply_resource(
        self,
        resource: Resource,
        distribution: Distribution,
        timeout: Timeout,
    ) -> dict[str, Any] | None:
        """Create or update a single object.

        Parameters
        ----------
        resource
            Rendered object. It is not modified.
        distribution
            Distribution that owns the object.
        timeout
            Timeout on the whole operation.

        Returns
        -------
        dict or None
            Object as stored in Kubernetes, or `None` if it was skipped.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        ScopeResolutionError
            Raised if the scope of the kind could not be determined.
        ServiceMutationError
            Raised if the object is a Service that was changed in an
            incompatible way.
        """
        if resource.kind == DISTRIBUTION_KIND:
            return None
        logger = self._logger.bind(
            kind=resource.kind,
            object_name=resource.name,
            object_namespace=resource.namespace,
        )
        namespaced = await self._storage.is_namespaced(
            resource.api_version, resource.kind
        )
        desired = self._prepare(resource, distribution, namespaced=namespaced)
        body = desired.to_dict()

        if desired.kind == "ClusterRoleBinding":
            if not await self._role_exists(desired, timeout):
                role = desired.get("/roleRef/name")
                msg = "Referenced ClusterRole missing, skipping"
                logger.info(msg, role=role)
                return None

        live = await self._storage.get(
            desired.api_version,
            desired.kind,
            desired.name,
            desired.namespace,
            timeout,
        )
        if live is None:
            logger.info(f"Creating {desired.kind}")
            return await self._storage.create(body, timeout)

        checker = get_ownership_checker(desired.kind, namespaced=namespaced)
        if not checker.is_owned(live, distribution):
            logger.debug("Skipping object not owned by this Distribution")
            return None
        if desired.kind == "PersistentVolumeClaim":
            return live
        if desired.kind == "Service":
            check_service_mutation(live, body, distribution)
        logger.debug(f"Applying {desired.kind}")
        return await self._storage.apply(body, distribution.name, timeout)

    async def delete_owned(
        self,
        resources: ResourceMap,
        distribution: Distribution,
        timeout: Timeout,
    ) -> list[ResourceKey]:
        """Delete any existing objects that belong to the Distribution.

        Used to remove objects whose feature has been turned off. Objects
        that do not exist or are not owned by the Distribution are left
        alone.

        Parameters
        ----------
        resources
            Rendered objects that should no longer exist.
        distribution
            Distribution being reconciled.
        timeout
            Timeout on the whole operation.

        Returns
        -------
        list of ResourceKey
            Objects that were deleted.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        ScopeResolutionError
            Raised if the scope of a kind could not be determined.
        """
        deleted = []
        for resource in resources:
            if resource.kind == DISTRIBUTION_KIND:
                continue
            namespaced = await self._storage.is_namespaced(
                resource.api_version, resource.kind
            )
            namespace = resource.namespace if namespaced else None
            live = await self._storage.get(
                resource.api_version,
                resource.kind,
                resource.name,
                namespace,
                timeout,
            )
            if live is None:
                continue
            checker = get_ownership_checker(
                resource.kind, namespaced=namespaced
            )
            if not checker.is_owned(live, distribution):
                continue
            self._logger.info(
                f"Deleting disabled {resource.kind}",
                object_name=resource.name,
                object_namespace=namespace,
            )
            await self._storage.delete(
                resource.api_version,
                resource.kind,
                resource.name,
                namespace,
                timeout,
            )
            key = ResourceKey(resource.kind, namespace, resource.name)
            deleted.append(key)
        return deleted

    def _prepare(
        self,
        resource: Resource,
        distribution: Distribution,
        *,
        namespaced: bool,
    ) -> Resource:
        """Add ownership markers appropriate for the scope of the object."""
        desired = resource.copy()
        if namespaced:
            if not desired.namespace:
                desired.namespace = distribution.namespace
            owner = distribution.to_owner_reference()
            desired.to_dict()["metadata"]["ownerReferences"] = [owner]
        else:
            # Owner references cannot cross from cluster scope to a
            # namespace, so cluster-scoped objects are identified by labels.
            desired.namespace = None
            desired.to_dict()["metadata"].pop("ownerReferences", None)
            desired.labels[MANAGED_BY_LABEL] = MANAGED_BY_VALUE
            desired.labels[PART_OF_LABEL] = PART_OF_VALUE
        return desired

    async def _role_exists(self, binding: Resource, timeout: Timeout) -> bool:
        role = binding.get("/roleRef/name")
        if binding.get("/roleRef/kind", "ClusterRole") != "ClusterRole":
            return True
        if not role:
            return False
        obj = await self._storage.get(
            _CLUSTER_ROLE_API_VERSION, "ClusterRole", role, None, timeout
        )
        return obj is not None
