"""Reconciliation of a single Distribution."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import timedelta

from safir.datetime import current_datetime
from structlog.stdlib import BoundLogger

from ..exceptions import (
    InvalidDistributionError,
    KubernetesError,
    ReconcileError,
    ReconcileStepError,
)
from ..models.domain.kubernetes import ObjectKey
from ..models.domain.operatorconfig import OperatorConfig
from ..models.domain.resources import ResourceMap
from ..models.v1.distribution import (
    Condition,
    ConditionStatus,
    ConditionType,
    Distribution,
    DistributionPhase,
    DistributionStatus,
)
from ..storage.health import HealthProbeClient
from ..storage.kubernetes.distribution import DistributionStorage
from ..storage.kubernetes.objects import KubernetesObjectStorage
from ..timeout import Timeout
from .apply import ApplyEngine
from .configmaps import ConfigMapService
from .context import ManifestContextBuilder
from .manifests.renderer import ManifestRenderer, excluded_kinds
from .status import StatusBuilder

__all__ = ["DistributionReconciler"]


class DistributionReconciler:
    """Drive one Distribution toward its declared state.

    Every reconcile starts from the current state of the cluster, so a
    reconcile interrupted at any point is completed by simply running the
    next one. The operator settings are fixed for the lifetime of the
    reconciler; when they change, a new reconciler is created with
    `with_operator_config`.

    Parameters
    ----------
    distribution_storage
        Storage for Distributions.
    object_storage
        Storage for the objects created for Distributions.
    health_client
        Client for the introspection endpoints of the server.
    renderer
        Manifest renderer.
    catalog
        Static catalog mapping distribution names to images.
    operator_config
        Operator-wide settings.
    operator_version
        Version of the operator, reported in the status.
    kubernetes_timeout
        Timeout for the Kubernetes calls of one reconcile.
    initializing_requeue
        Delay before checking again on a Distribution that is initializing.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        distribution_storage: DistributionStorage,
        object_storage: KubernetesObjectStorage,
        health_client: HealthProbeClient,
        renderer: ManifestRenderer,
        catalog: Mapping[str, str],
        operator_config: OperatorConfig,
        operator_version: str | None,
        kubernetes_timeout: timedelta,
        initializing_requeue: timedelta,
        logger: BoundLogger,
    ) -> None:
        self._distributions = distribution_storage
        self._objects = object_storage
        self._health = health_client
        self._renderer = renderer
        self._catalog = catalog
        self._operator_config = operator_config
        self._operator_version = operator_version
        self._timeout = kubernetes_timeout
        self._initializing_requeue = initializing_requeue
        self._logger = logger

        self._apply = ApplyEngine(object_storage, logger)
        self._config_maps = ConfigMapService(
            object_storage, self._apply, logger
        )
        self._context = ManifestContextBuilder(catalog, operator_config)
        self._status = StatusBuilder(
            storage=object_storage,
            health_client=health_client,
            catalog=catalog,
            operator_version=operator_version,
            logger=logger,
        )

    @property
    def operator_config(self) -> OperatorConfig:
        """Operator settings used by this reconciler."""
        return self._operator_config

    def with_operator_config(
        self, operator_config: OperatorConfig
    ) -> DistributionReconciler:
        """Create a reconciler that uses different operator settings.

        Parameters
        ----------
        operator_config
            New operator settings.

        Returns
        -------
        DistributionReconciler
            New reconciler sharing everything else with this one.
        """
        return DistributionReconciler(
            distribution_storage=self._distributions,
            object_storage=self._objects,
            health_client=self._health,
            renderer=self._renderer,
            catalog=self._catalog,
            operator_config=operator_config,
            operator_version=self._operator_version,
            kubernetes_timeout=self._timeout,
            initializing_requeue=self._initializing_requeue,
            logger=self._logger,
        )

    async def reconcile(self, key: ObjectKey) -> timedelta | None:
        """Reconcile one Distribution.

        The status of the Distribution is written even if reconciling its
        objects failed, so that the failure is visible.

        Parameters
        ----------
        key
            Namespace and name of the Distribution.

        Returns
        -------
        datetime.timedelta or None
            Delay after which the Distribution should be reconciled again,
            or `None` if no further reconcile is needed until something
            changes.

        Raises
        ------
        ReconcileError
            Raised if the reconcile failed and should be retried. If both
            reconciling the objects and updating the status failed, the
            error from reconciling the objects is raised.
        """
        logger = self._logger.bind(namespace=key.namespace, name=key.name)
        timeout = Timeout(self._timeout)
        try:
            distribution = await self._distributions.read(key, timeout)
        except InvalidDistributionError as e:
            logger.warning("Invalid Distribution", error=e.message)
            await self._write_invalid_status(key, e)
            return None
        except (KubernetesError, TimeoutError) as e:
            raise ReconcileStepError(
                "read Distribution",
                e,
                namespace=key.namespace,
                name=key.name,
            ) from e
        if distribution is None:
            logger.debug("Distribution not found, nothing to do")
            return None

        error = None
        try:
            await self._reconcile_objects(distribution, timeout, logger)
        except ReconcileError as e:
            logger.warning("Reconcile failed", error=str(e))
            error = e

        # Use a fresh timeout so that a slow reconcile can still report its
        # failure.
        status_timeout = Timeout(self._timeout)
        try:
            with self._step("update status", distribution):
                status = await self._status.build(
                    distribution, error, status_timeout
                )
                await self._distributions.update_status(
                    key, status, status_timeout
                )
        except ReconcileStepError as e:
            if error:
                msg = "Unable to update status of failed Distribution"
                logger.warning(msg, error=str(e))
                raise error from e
            raise

        if error:
            raise error
        logger.debug(
            "Reconciled Distribution",
            phase=status.phase.value,
            ready_replicas=status.available_replicas,
        )
        if status.phase == DistributionPhase.INITIALIZING:
            return self._initializing_requeue
        return None

    async def _reconcile_objects(
        self,
        distribution: Distribution,
        timeout: Timeout,
        logger: BoundLogger,
    ) -> None:
        """Bring the objects of a Distribution up to date.

        Raises
        ------
        ReconcileStepError
            Raised if any step failed.
        """
        with self._step("reconcile ConfigMaps", distribution):
            observed = await self._config_maps.reconcile(
                distribution, timeout
            )
        with self._step("build manifest context", distribution):
            context = self._context.build(distribution, observed)
        with self._step("render manifests", distribution):
            rendered = self._renderer.render(distribution, context)

        disabled_kinds = excluded_kinds(distribution, self._operator_config)
        disabled = ResourceMap(
            r for r in rendered if r.kind in disabled_kinds
        )
        enabled = rendered.without_kinds(disabled_kinds)
        with self._step("delete disabled resources", distribution):
            deleted = await self._apply.delete_owned(
                disabled, distribution, timeout
            )
        if deleted:
            resources = [str(k) for k in deleted]
            logger.info("Deleted disabled resources", resources=resources)
        with self._step("apply manifests", distribution):
            await self._apply.apply(enabled, distribution, timeout)

    @contextmanager
    def _step(self, step: str, distribution: Distribution) -> Iterator[None]:
        """Wrap failures of one reconcile step with the step name."""
        try:
            yield
        except (ReconcileError, KubernetesError, TimeoutError) as e:
            raise ReconcileStepError(
                step,
                e,
                namespace=distribution.namespace,
                name=distribution.name,
            ) from e

    async def _write_invalid_status(
        self, key: ObjectKey, error: InvalidDistributionError
    ) -> None:
        """Report a Distribution that could not be parsed.

        The rest of the status cannot be computed without a valid
        Distribution, so only the phase and a single condition are written.
        """
        now = current_datetime()
        condition = Condition(
            type=ConditionType.DEPLOYMENT_READY,
            status=ConditionStatus.FALSE,
            reason="InvalidDistribution",
            message=f"Resource reconciliation failed: {error.message}",
            last_transition_time=now,
        )
        status = DistributionStatus(
            phase=DistributionPhase.FAILED, conditions=[condition]
        )
        status.version.operator_version = self._operator_version
        status.version.last_updated = now
        try:
            await self._distributions.update_status(
                key, status, Timeout(self._timeout)
            )
        except (KubernetesError, TimeoutError) as e:
            raise ReconcileStepError(
                "update status",
                e,
                namespace=key.namespace,
                name=key.name,
            ) from e
