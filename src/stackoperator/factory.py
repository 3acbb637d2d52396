"""Component factory and process-wide context management."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass
from typing import Self

import structlog
from httpx import AsyncClient
from kubernetes_asyncio.client.api_client import ApiClient
from safir.dependencies.http_client import http_client_dependency
from safir.slack.webhook import SlackWebhookClient
from structlog.stdlib import BoundLogger

from .background import BackgroundTaskManager
from .config import Config
from .models.domain.operatorconfig import OperatorConfig
from .services.manifests.renderer import ManifestRenderer
from .services.operatorconfig import OperatorConfigService
from .services.reconciler import DistributionReconciler
from .services.watchers import IndexedLookup, ScanLookup
from .services.workqueue import WorkQueue
from .storage.health import HealthProbeClient
from .storage.kubernetes.distribution import DistributionStorage
from .storage.kubernetes.objects import KubernetesObjectStorage
from .storage.kubernetes.watches import ClusterWatchStorage
from .timeout import Timeout

__all__ = ["Factory", "ProcessContext"]


@dataclass(frozen=True, slots=True)
class ProcessContext:
    """Per-process global application state.

    This object holds all of the per-process singletons and is managed by
    `~stackoperator.dependencies.context.ContextDependency`. It is used by
    the `Factory` class as a source of dependencies to inject into created
    service and storage objects, and by the context dependency as a source of
    singletons that should also be exposed to route handlers via the request
    context.
    """

    config: Config
    """Operator configuration."""

    http_client: AsyncClient
    """Shared HTTP client."""

    kubernetes_client: ApiClient
    """Shared Kubernetes client."""

    object_storage: KubernetesObjectStorage
    """Storage for Kubernetes objects of any kind."""

    queue: WorkQueue
    """Work queue of Distributions to reconcile."""

    background: BackgroundTaskManager
    """Manager for the reconcile workers and watches."""

    @classmethod
    async def from_config(cls, config: Config) -> Self:
        """Create a new process context from the operator configuration.

        The operator ConfigMap is read, and created if missing, as part of
        building the context.

        Parameters
        ----------
        config
            Operator configuration.

        Returns
        -------
        ProcessContext
            Shared context for an operator process.

        Raises
        ------
        KubernetesError
            Raised if the operator ConfigMap could not be read or created.
        OperatorConfigError
            Raised if the operator ConfigMap contains invalid feature flags.
        """
        http_client = await http_client_dependency()
        kubernetes_client = ApiClient()

        # This logger is used only by process-global singletons.
        logger = structlog.get_logger(__name__)

        object_storage = KubernetesObjectStorage(kubernetes_client, logger)
        return await cls.from_storage(
            config,
            http_client=http_client,
            kubernetes_client=kubernetes_client,
            object_storage=object_storage,
            watch_storage=ClusterWatchStorage(kubernetes_client, logger),
            logger=logger,
        )

    @classmethod
    async def from_storage(
        cls,
        config: Config,
        *,
        http_client: AsyncClient,
        kubernetes_client: ApiClient,
        object_storage: KubernetesObjectStorage,
        watch_storage: ClusterWatchStorage,
        logger: BoundLogger,
    ) -> Self:
        """Create a new process context around existing storage objects.

        Used by `from_config` once the storage objects have been built.

        Parameters
        ----------
        config
            Operator configuration.
        http_client
            Shared HTTP client.
        kubernetes_client
            Shared Kubernetes client.
        object_storage
            Storage for Kubernetes objects of any kind.
        watch_storage
            Source of watch events.
        logger
            Logger for process-global singletons.

        Returns
        -------
        ProcessContext
            Shared context for an operator process.
        """
        slack_client = None
        if config.slack_webhook:
            slack_client = SlackWebhookClient(
                config.slack_webhook.get_secret_value(), config.name, logger
            )

        operator_config_service = OperatorConfigService(
            object_storage,
            config.operator_namespace,
            config.operator_config_map,
            logger,
        )
        operator_config = await operator_config_service.load(
            Timeout(config.kubernetes_timeout)
        )

        distribution_storage = DistributionStorage(object_storage, logger)
        queue = WorkQueue(
            backoff_initial=config.backoff.initial,
            backoff_max=config.backoff.maximum,
        )
        reconciler = _build_reconciler(
            config,
            operator_config,
            http_client=http_client,
            object_storage=object_storage,
            logger=logger,
        )
        background = BackgroundTaskManager(
            queue=queue,
            reconciler=reconciler,
            index=IndexedLookup(),
            scan=ScanLookup(
                distribution_storage,
                config.watch_namespace,
                config.kubernetes_timeout,
            ),
            operator_config=operator_config_service,
            distribution_storage=distribution_storage,
            watch_storage=watch_storage,
            workers=config.max_concurrent_reconciles,
            resync_interval=config.resync_interval,
            kubernetes_timeout=config.kubernetes_timeout,
            watch_namespace=config.watch_namespace,
            slack_client=slack_client,
            logger=logger,
        )
        return cls(
            config=config,
            http_client=http_client,
            kubernetes_client=kubernetes_client,
            object_storage=object_storage,
            queue=queue,
            background=background,
        )

    async def aclose(self) -> None:
        """Free allocated resources."""
        await self.kubernetes_client.close()

    async def start(self) -> None:
        """Start the background tasks running."""
        await self.background.start()

    async def stop(self) -> None:
        """Clean up a process context.

        Called during shutdown, or before recreating the process context using
        a different configuration.
        """
        await self.background.stop()


def _build_reconciler(
    config: Config,
    operator_config: OperatorConfig,
    *,
    http_client: AsyncClient,
    object_storage: KubernetesObjectStorage,
    logger: BoundLogger,
) -> DistributionReconciler:
    return DistributionReconciler(
        distribution_storage=DistributionStorage(object_storage, logger),
        object_storage=object_storage,
        health_client=HealthProbeClient(
            http_client, config.health_probe_timeout, logger
        ),
        renderer=ManifestRenderer(
            config.manifests_path, config.operator_namespace
        ),
        catalog=config.distributions,
        operator_config=operator_config,
        operator_version=config.operator_version,
        kubernetes_timeout=config.kubernetes_timeout,
        initializing_requeue=config.initializing_requeue,
        logger=logger,
    )


class Factory:
    """Build Distribution operator components.

    Uses the contents of a `ProcessContext` to construct the components of
    the application on demand.

    Parameters
    ----------
    context
        Shared process context.
    logger
        Logger to use for messages.
    """

    @classmethod
    @asynccontextmanager
    async def standalone(cls, config: Config) -> AsyncIterator[Self]:
        """Async context manager for operator components.

        Intended for background jobs or the test suite.

        Parameters
        ----------
        config
            Operator configuration.

        Yields
        ------
        Factory
            Newly-created factory. Must be used as a context manager.
        """
        logger = structlog.get_logger(__name__)
        context = await ProcessContext.from_config(config)
        factory = cls(context, logger)
        async with aclosing(factory):
            yield factory

    def __init__(self, context: ProcessContext, logger: BoundLogger) -> None:
        self._context = context
        self._logger = logger
        self._background_services_started = False

    @property
    def queue(self) -> WorkQueue:
        """Global work queue, from the `ProcessContext`."""
        return self._context.queue

    async def aclose(self) -> None:
        """Shut down the factory.

        After this method is called, the factory object is no longer valid and
        must not be used.
        """
        if self._background_services_started:
            await self._context.stop()
        await self._context.aclose()

    def create_reconciler(
        self, operator_config: OperatorConfig | None = None
    ) -> DistributionReconciler:
        """Create a reconciler for Distributions.

        Parameters
        ----------
        operator_config
            Operator settings to use. If not given, the settings currently in
            use by the background workers are used.

        Returns
        -------
        DistributionReconciler
            Newly-created reconciler.
        """
        if operator_config is None:
            current = self._context.background.reconciler
            operator_config = current.operator_config
        return _build_reconciler(
            self._context.config,
            operator_config,
            http_client=self._context.http_client,
            object_storage=self._context.object_storage,
            logger=self._logger,
        )

    async def start_background_services(self) -> None:
        """Start global background services managed by the process context.

        These are normally started by the context dependency when running as
        a FastAPI app, but the test suite may want the background processes
        running while testing with only a factory.

        Only used by the test suite.
        """
        await self._context.start()
        self._background_services_started = True
