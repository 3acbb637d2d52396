"""Distribution operator background processing."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from datetime import timedelta

from aiojobs import Scheduler
from safir.datetime import current_datetime
from safir.slack.webhook import SlackWebhookClient
from structlog.stdlib import BoundLogger

from .exceptions import (
    KubernetesError,
    OperatorConfigError,
    ReconcileError,
    ReconcileStepError,
)
from .models.domain.kubernetes import ObjectKey
from .services.operatorconfig import OperatorConfigService
from .services.reconciler import DistributionReconciler
from .services.watchers import (
    ChangeDetector,
    DistributionLookup,
    IndexedLookup,
)
from .services.workqueue import WorkQueue
from .storage.kubernetes.distribution import DistributionStorage
from .storage.kubernetes.watcher import WatchEvent
from .storage.kubernetes.watches import ClusterWatchStorage
from .timeout import Timeout

__all__ = ["BackgroundTaskManager"]


class BackgroundTaskManager:
    """Manage Distribution operator background tasks.

    While the operator is running, it needs to perform several continuous
    background tasks, namely:

    #. Reconcile Distributions from the work queue with a pool of workers.
    #. Watch Distributions for changes to their specification.
    #. Watch ConfigMaps for changes to referenced configuration and to the
       operator settings.
    #. Watch Deployments created by the operator for changes in readiness.
    #. Periodically queue every Distribution to catch missed events.

    This class manages all of these background tasks. The decisions about
    what to reconcile are made by the change detector and the reconciles
    themselves are done by the reconciler.

    This class is created during startup and tracked as part of the
    `~stackoperator.factory.ProcessContext`.

    Parameters
    ----------
    queue
        Work queue of Distributions to reconcile.
    reconciler
        Reconciler, replaced whenever the operator settings change.
    index
        Index of the ConfigMaps referenced by Distributions.
    scan
        Lookup of referencing Distributions used when the index has no
        answer.
    operator_config
        Service that reads the operator settings.
    distribution_storage
        Storage for Distributions, used for resyncs.
    watch_storage
        Source of watch events.
    workers
        Number of concurrent reconciles.
    resync_interval
        How frequently to queue every Distribution.
    kubernetes_timeout
        Timeout for the list call of each resync.
    watch_namespace
        Namespace to which the operator is restricted, if any.
    slack_client
        Optional Slack webhook client for alerts.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        queue: WorkQueue,
        reconciler: DistributionReconciler,
        index: IndexedLookup,
        scan: DistributionLookup,
        operator_config: OperatorConfigService,
        distribution_storage: DistributionStorage,
        watch_storage: ClusterWatchStorage,
        workers: int,
        resync_interval: timedelta,
        kubernetes_timeout: timedelta,
        watch_namespace: str | None,
        slack_client: SlackWebhookClient | None,
        logger: BoundLogger,
    ) -> None:
        self._queue = queue
        self._reconciler = reconciler
        self._operator_config = operator_config
        self._distributions = distribution_storage
        self._watches = watch_storage
        self._workers = workers
        self._resync_interval = resync_interval
        self._timeout = kubernetes_timeout
        self._namespace = watch_namespace
        self._slack = slack_client
        self._logger = logger

        self._detector = ChangeDetector(
            queue=queue,
            index=index,
            scan=scan,
            is_operator_config=operator_config.is_operator_config,
            on_operator_config=self.reload_operator_config,
            logger=logger,
        )
        self._scheduler: Scheduler | None = None

    @property
    def reconciler(self) -> DistributionReconciler:
        """Reconciler currently used by the workers."""
        return self._reconciler

    async def reload_operator_config(self, data: Mapping[str, str]) -> None:
        """Switch to new operator settings and reconcile everything.

        If the new settings are invalid, the previous ones stay in effect.

        Parameters
        ----------
        data
            Data of the operator ConfigMap.
        """
        try:
            config = self._operator_config.parse(data)
        except OperatorConfigError as e:
            msg = "Invalid operator configuration, keeping previous settings"
            self._logger.error(msg, error=str(e))
            if self._slack:
                await self._slack.post_exception(e)
            return
        if config == self._reconciler.operator_config:
            return
        self._logger.info("Operator configuration changed")
        self._reconciler = self._reconciler.with_operator_config(config)
        self._detector.enqueue_all()

    async def resync(self) -> None:
        """Queue every Distribution and refresh the reference index.

        Raises
        ------
        KubernetesError
            Raised if listing Distributions failed.
        """
        timeout = Timeout(self._timeout)
        objs = await self._distributions.list(self._namespace, timeout)
        self._detector.resync(objs)
        self._logger.debug("Queued all Distributions", count=len(objs))

    async def start(self) -> None:
        """Start all background tasks.

        Intended to be called during operator startup. The Distributions are
        listed in the foreground first so that the reference index is
        complete before any ConfigMap events are handled.
        """
        if self._scheduler:
            msg = "Background tasks already running, cannot start"
            self._logger.warning(msg)
            return
        self._scheduler = Scheduler()

        self._logger.info("Populating internal state")
        await self.resync()

        coros = [self._worker(i) for i in range(self._workers)]
        coros.extend(
            [
                self._watch(
                    self._watches.watch_distributions,
                    self._detector.handle_distribution_event,
                    "watching Distributions",
                ),
                self._watch(
                    self._watches.watch_config_maps,
                    self._detector.handle_config_map_event,
                    "watching ConfigMaps",
                ),
                self._watch(
                    self._watches.watch_deployments,
                    self._detector.handle_deployment_event,
                    "watching Deployments",
                ),
                self._loop(
                    self.resync,
                    self._resync_interval,
                    "resyncing Distributions",
                ),
            ]
        )
        self._logger.info("Starting background tasks")
        for coro in coros:
            await self._scheduler.spawn(coro)

    async def stop(self) -> None:
        """Stop the background tasks."""
        if not self._scheduler:
            msg = "Background tasks were already stopped"
            self._logger.warning(msg)
            return
        self._logger.info("Stopping background tasks")
        self._queue.shutdown()
        await self._scheduler.close()
        self._scheduler = None

    async def _loop(
        self,
        call: Callable[[], Awaitable[None]],
        interval: timedelta,
        description: str,
    ) -> None:
        """Wrap a coroutine in a periodic scheduling loop.

        The provided coroutine is run on every interval. This method always
        delays by the interval first before running the coroutine for the
        first time.

        Parameters
        ----------
        call
            Async function to run repeatedly.
        interval
            Scheduling interval to use.
        description
            Description of the background task for error reporting.
        """
        while True:
            await asyncio.sleep(interval.total_seconds())
            start = current_datetime(microseconds=True)
            try:
                await call()
            except Exception as e:
                # On failure, log the exception but otherwise continue as
                # normal. The next run may well succeed.
                elapsed = current_datetime(microseconds=True) - start
                msg = f"Uncaught exception {description}"
                self._logger.exception(msg, delay=elapsed.total_seconds())
                if self._slack:
                    await self._slack.post_uncaught_exception(e)

    async def _watch[T](
        self,
        watch: Callable[[str | None], AsyncIterator[WatchEvent[T]]],
        handler: Callable[[WatchEvent[T]], Awaitable[None]],
        description: str,
    ) -> None:
        """Feed the events of a watch to a handler until stopped.

        If the watch fails, it is restarted after a short pause. Restarting
        produces events for every existing object, so nothing is lost.

        Parameters
        ----------
        watch
            Method that starts the watch, given the namespace to watch.
        handler
            Handler for each event.
        description
            Description of the background task for error reporting.
        """
        while True:
            try:
                async for event in watch(self._namespace):
                    await handler(event)
            except Exception as e:
                self._logger.exception(f"Error {description}")
                if self._slack:
                    await self._slack.post_uncaught_exception(e)
                await asyncio.sleep(1)

    async def _worker(self, worker: int) -> None:
        """Reconcile Distributions from the work queue until shut down.

        Parameters
        ----------
        worker
            Number of the worker, for logging.
        """
        while True:
            key = await self._queue.get()
            if key is None:
                return
            try:
                await self._process(key, worker)
            finally:
                self._queue.done(key)

    async def _process(self, key: ObjectKey, worker: int) -> None:
        """Reconcile one Distribution and schedule any retry."""
        logger = self._logger.bind(
            namespace=key.namespace, name=key.name, worker=worker
        )
        try:
            requeue = await self._reconciler.reconcile(key)
        except ReconcileError as e:
            delay = self._queue.add_rate_limited(key)
            logger.warning(
                "Reconcile failed, will retry",
                error=str(e),
                retry_delay=delay.total_seconds(),
                failures=self._queue.num_requeues(key),
            )
            if self._slack and self._should_alert(e, key):
                await self._slack.post_exception(e)
        except Exception as e:
            delay = self._queue.add_rate_limited(key)
            logger.exception(
                "Uncaught exception reconciling Distribution",
                retry_delay=delay.total_seconds(),
            )
            if self._slack:
                await self._slack.post_uncaught_exception(e)
        else:
            self._queue.forget(key)
            if requeue:
                self._queue.add_after(key, requeue)

    def _should_alert(self, error: ReconcileError, key: ObjectKey) -> bool:
        """Whether a reconcile failure is an operator problem.

        Validation failures are problems with the Distribution and are only
        reported in its status. Failures talking to Kubernetes are reported
        to Slack as well, but only on the first failure of a Distribution to
        avoid repeating the same alert on every retry.
        """
        if not isinstance(error, ReconcileStepError):
            return False
        if not isinstance(error.error, KubernetesError):
            return False
        return self._queue.num_requeues(key) == 1
