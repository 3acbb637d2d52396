"""Long-running watches of the objects that trigger reconciles."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiClient, V1ConfigMap, V1Deployment
from structlog.stdlib import BoundLogger

from ...constants import (
    DISTRIBUTION_GROUP,
    DISTRIBUTION_KIND,
    DISTRIBUTION_PLURAL,
    DISTRIBUTION_VERSION,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
)
from .watcher import KubernetesWatcher, WatchEvent

__all__ = ["ClusterWatchStorage"]


class ClusterWatchStorage:
    """Watch Distributions, ConfigMaps, and managed Deployments.

    Each method returns an iterator that continues until an unrecoverable
    error. The first events of each watch are synthetic ``ADDED`` events for
    every existing object.

    Parameters
    ----------
    api_client
        Kubernetes API client.
    logger
        Logger to use.
    """

    def __init__(self, api_client: ApiClient, logger: BoundLogger) -> None:
        self._core_api = client.CoreV1Api(api_client)
        self._apps_api = client.AppsV1Api(api_client)
        self._custom_api = client.CustomObjectsApi(api_client)
        self._logger = logger

    async def watch_config_maps(
        self, namespace: str | None = None
    ) -> AsyncIterator[WatchEvent[V1ConfigMap]]:
        """Watch ConfigMaps for changes.

        Parameters
        ----------
        namespace
            Namespace to watch, or `None` to watch all namespaces.

        Yields
        ------
        WatchEvent
            Next ConfigMap event.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        if namespace:
            method = self._core_api.list_namespaced_config_map
        else:
            method = self._core_api.list_config_map_for_all_namespaces
        watcher = KubernetesWatcher(
            method=method,
            object_type=V1ConfigMap,
            kind="ConfigMap",
            namespace=namespace,
            logger=self._logger,
        )
        try:
            async for event in watcher.watch():
                yield event
        finally:
            await watcher.close()

    async def watch_deployments(
        self, namespace: str | None = None
    ) -> AsyncIterator[WatchEvent[V1Deployment]]:
        """Watch Deployments created by the operator for changes.

        Parameters
        ----------
        namespace
            Namespace to watch, or `None` to watch all namespaces.

        Yields
        ------
        WatchEvent
            Next Deployment event.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        if namespace:
            method = self._apps_api.list_namespaced_deployment
        else:
            method = self._apps_api.list_deployment_for_all_namespaces
        watcher = KubernetesWatcher(
            method=method,
            object_type=V1Deployment,
            kind="Deployment",
            namespace=namespace,
            label_selector=f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}",
            logger=self._logger,
        )
        try:
            async for event in watcher.watch():
                yield event
        finally:
            await watcher.close()

    async def watch_distributions(
        self, namespace: str | None = None
    ) -> AsyncIterator[WatchEvent[dict[str, Any]]]:
        """Watch Distributions for changes.

        Distributions are returned unparsed so that an invalid object can
        still be routed to the reconciler, which reports the problem in its
        status.

        Parameters
        ----------
        namespace
            Namespace to watch, or `None` to watch all namespaces.

        Yields
        ------
        WatchEvent
            Next Distribution event.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        if namespace:
            method = self._custom_api.list_namespaced_custom_object
        else:
            method = self._custom_api.list_cluster_custom_object
        watcher = KubernetesWatcher(
            method=method,
            object_type=dict[str, Any],
            kind=DISTRIBUTION_KIND,
            namespace=namespace,
            group=DISTRIBUTION_GROUP,
            version=DISTRIBUTION_VERSION,
            plural=DISTRIBUTION_PLURAL,
            logger=self._logger,
        )
        try:
            async for event in watcher.watch():
                yield event
        finally:
            await watcher.close()
