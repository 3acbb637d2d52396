"""Computation of the status of a Distribution."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from safir.datetime import current_datetime
from structlog.stdlib import BoundLogger

from ..exceptions import (
    HealthProbeParseError,
    HealthProbeWebError,
    KubernetesError,
)
from ..models.v1.distribution import (
    Condition,
    ConditionStatus,
    ConditionType,
    Distribution,
    DistributionConfig,
    DistributionPhase,
    DistributionStatus,
    ProviderInfo,
    VersionInfo,
)
from ..storage.health import HealthProbeClient, server_url
from ..storage.kubernetes.objects import KubernetesObjectStorage
from ..timeout import Timeout

__all__ = [
    "DeploymentObservation",
    "StatusBuilder",
    "observe_deployment",
]


@dataclass(frozen=True)
class DeploymentObservation:
    """Phase and DeploymentReady condition derived from the Deployment."""

    phase: DistributionPhase
    """Lifecycle phase implied by the Deployment."""

    status: ConditionStatus
    """Status of the DeploymentReady condition."""

    reason: str
    """Reason of the DeploymentReady condition."""

    message: str
    """Message of the DeploymentReady condition."""

    ready_replicas: int
    """Number of ready replicas."""


def observe_deployment(
    deployment: dict[str, Any] | None, desired: int
) -> DeploymentObservation:
    """Derive the phase from the observed state of the Deployment.

    Only the ready replica count and the desired replica count matter, so a
    Deployment whose counts match always yields ``Ready`` no matter what the
    previous phase was.

    Parameters
    ----------
    deployment
        Deployment as stored in Kubernetes, or `None` if it does not exist.
    desired
        Desired number of replicas.

    Returns
    -------
    DeploymentObservation
        Derived phase and condition.
    """
    if deployment is None:
        return DeploymentObservation(
            phase=DistributionPhase.PENDING,
            status=ConditionStatus.FALSE,
            reason="DeploymentNotFound",
            message="Deployment not found",
            ready_replicas=0,
        )
    ready = (deployment.get("status") or {}).get("readyReplicas") or 0
    counts = f"{ready}/{desired} replicas ready"
    if ready == desired:
        return DeploymentObservation(
            phase=DistributionPhase.READY,
            status=ConditionStatus.TRUE,
            reason="DeploymentReady",
            message=f"Deployment is ready: {counts}",
            ready_replicas=ready,
        )
    if ready == 0:
        message = f"Deployment is initializing: {counts}"
    elif ready < desired:
        message = f"Deployment is scaling: {counts}"
    else:
        message = f"Deployment is scaling down: {counts}"
    return DeploymentObservation(
        phase=DistributionPhase.INITIALIZING,
        status=ConditionStatus.FALSE,
        reason="DeploymentInitializing",
        message=message,
        ready_replicas=ready,
    )


class StatusBuilder:
    """Compute the status of a Distribution from the state of the cluster.

    Conditions are recomputed from scratch on every reconcile. The previous
    status is consulted only to keep the transition time of conditions whose
    status did not change and to keep the last known server version when the
    server cannot be reached.

    Parameters
    ----------
    storage
        Storage for Kubernetes objects.
    health_client
        Client for the introspection endpoints of the server.
    catalog
        Static catalog mapping distribution names to images.
    operator_version
        Version of the operator, if known.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        storage: KubernetesObjectStorage,
        health_client: HealthProbeClient,
        catalog: Mapping[str, str],
        operator_version: str | None,
        logger: BoundLogger,
    ) -> None:
        self._storage = storage
        self._health = health_client
        self._catalog = dict(catalog)
        self._operator_version = operator_version
        self._logger = logger

    async def build(
        self,
        distribution: Distribution,
        error: Exception | None,
        timeout: Timeout,
    ) -> DistributionStatus:
        """Compute the new status.

        Parameters
        ----------
        distribution
            Distribution as read at the start of the reconcile.
        error
            Error that aborted the reconcile, if any. This always forces the
            ``Failed`` phase.
        timeout
            Timeout on the whole operation.

        Returns
        -------
        DistributionStatus
            New status.

        Raises
        ------
        KubernetesError
            Raised if the Deployment could not be read.
        """
        previous = distribution.status or DistributionStatus()
        selection = distribution.spec.server.distribution
        active = selection.name if selection.name else "custom"
        status = DistributionStatus(
            distribution_config=DistributionConfig(
                active_distribution=active,
                available_distributions=self._catalog,
            ),
            version=VersionInfo(
                operator_version=self._operator_version,
                server_version=previous.version.server_version,
            ),
        )

        deployment = await self._storage.get(
            "apps/v1",
            "Deployment",
            distribution.name,
            distribution.namespace,
            timeout,
        )
        observation = observe_deployment(
            deployment, self._desired_replicas(distribution, deployment)
        )
        status.available_replicas = observation.ready_replicas
        if error:
            status.phase = DistributionPhase.FAILED
            deployment_condition = (
                ConditionStatus.FALSE,
                "ReconcileFailed",
                f"Resource reconciliation failed: {error!s}",
            )
        else:
            status.phase = observation.phase
            deployment_condition = (
                observation.status,
                observation.reason,
                observation.message,
            )

        conditions = [
            (ConditionType.DEPLOYMENT_READY, *deployment_condition),
            (
                ConditionType.STORAGE_READY,
                *await self._check_storage(distribution, timeout),
            ),
            (
                ConditionType.SERVICE_READY,
                *await self._check_service(distribution, status, timeout),
            ),
        ]
        status.route_url = await self._get_route_url(distribution, timeout)

        if status.phase == DistributionPhase.READY:
            health = await self._probe(distribution, status)
        else:
            health = (
                ConditionStatus.FALSE,
                "DeploymentNotReady",
                "Deployment not ready",
            )
        conditions.append((ConditionType.HEALTH_CHECK, *health))

        status.conditions = [
            self._build_condition(previous, type_, cond, reason, message)
            for type_, cond, reason, message in conditions
        ]
        status.version.last_updated = current_datetime()
        return status

    def _build_condition(
        self,
        previous: DistributionStatus,
        type_: ConditionType,
        status: ConditionStatus,
        reason: str,
        message: str,
    ) -> Condition:
        """Build a condition, keeping its transition time if unchanged."""
        old = previous.get_condition(type_)
        if old and old.status == status:
            transition = old.last_transition_time
        else:
            transition = current_datetime()
        return Condition(
            type=type_,
            status=status,
            reason=reason,
            message=message,
            last_transition_time=transition,
        )

    async def _check_service(
        self,
        distribution: Distribution,
        status: DistributionStatus,
        timeout: Timeout,
    ) -> tuple[ConditionStatus, str, str]:
        if not distribution.has_ports:
            return (
                ConditionStatus.TRUE,
                "ServiceDisabled",
                "No port declared, Service not required",
            )
        try:
            service = await self._storage.get(
                "v1",
                "Service",
                distribution.service_name,
                distribution.namespace,
                timeout,
            )
        except KubernetesError as e:
            message = f"Failed to get Service: {e!s}"
            return (ConditionStatus.FALSE, "ServiceError", message)
        if service is None:
            message = "Failed to get Service: not found"
            return (ConditionStatus.FALSE, "ServiceNotFound", message)
        status.service_url = server_url(distribution)
        return (ConditionStatus.TRUE, "ServiceReady", "Service is ready")

    async def _check_storage(
        self, distribution: Distribution, timeout: Timeout
    ) -> tuple[ConditionStatus, str, str]:
        if not distribution.spec.server.storage:
            return (
                ConditionStatus.TRUE,
                "EphemeralStorage",
                "No storage requested, using an emptyDir volume",
            )
        try:
            pvc = await self._storage.get(
                "v1",
                "PersistentVolumeClaim",
                f"{distribution.name}-pvc",
                distribution.namespace,
                timeout,
            )
        except KubernetesError as e:
            message = f"Failed to get PVC: {e!s}"
            return (ConditionStatus.FALSE, "StorageError", message)
        if pvc is None:
            message = "Failed to get PVC: not found"
            return (ConditionStatus.FALSE, "StorageNotFound", message)
        phase = (pvc.get("status") or {}).get("phase") or "Unknown"
        if phase != "Bound":
            message = f"PVC is not bound: {phase}"
            return (ConditionStatus.FALSE, "StorageNotBound", message)
        return (ConditionStatus.TRUE, "StorageReady", "PVC is bound")

    def _desired_replicas(
        self, distribution: Distribution, deployment: dict[str, Any] | None
    ) -> int:
        """Determine the desired replica count.

        With autoscaling, the autoscaler owns the replica count of the
        Deployment, so that is what the pods should converge to.
        """
        if distribution.autoscaling_enabled and deployment:
            replicas = (deployment.get("spec") or {}).get("replicas")
            if replicas is not None:
                return replicas
        return distribution.spec.replicas

    async def _get_route_url(
        self, distribution: Distribution, timeout: Timeout
    ) -> str | None:
        network = distribution.spec.network
        if not network or not network.expose_route:
            return None
        try:
            ingress = await self._storage.get(
                "networking.k8s.io/v1",
                "Ingress",
                f"{distribution.name}-ingress",
                distribution.namespace,
                timeout,
            )
        except KubernetesError as e:
            self._logger.warning("Unable to read Ingress", error=str(e))
            return None
        if not ingress:
            return None
        balancer = (ingress.get("status") or {}).get("loadBalancer") or {}
        for entry in balancer.get("ingress") or []:
            host = entry.get("hostname") or entry.get("ip")
            if host:
                return f"http://{host}"
        for rule in (ingress.get("spec") or {}).get("rules") or []:
            if rule.get("host"):
                return f"http://{rule['host']}"
        return None

    async def _probe(
        self, distribution: Distribution, status: DistributionStatus
    ) -> tuple[ConditionStatus, str, str]:
        """Query the server and record providers and version.

        Failures leave the health unknown rather than failing the reconcile.
        Providers are cleared on failure, but the server version is kept to
        avoid flapping on transient errors.
        """
        providers: list[ProviderInfo] = []
        try:
            providers = await self._health.get_providers(distribution)
        except (HealthProbeParseError, HealthProbeWebError) as e:
            self._logger.warning("Unable to get providers", error=str(e))
            result = (
                ConditionStatus.UNKNOWN,
                "HealthCheckFailed",
                f"Health check failed: {e!s}",
            )
        else:
            result = (
                ConditionStatus.TRUE,
                "HealthCheckPassed",
                "Health check passed",
            )
        status.distribution_config.providers = providers

        try:
            version = await self._health.get_version(distribution)
        except (HealthProbeParseError, HealthProbeWebError) as e:
            self._logger.warning("Unable to get version", error=str(e))
        else:
            status.version.server_version = version
        return result
