"""Translation of Kubernetes events into reconcile requests."""

from __future__ import annotations

import copy
from abc import ABCMeta, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import timedelta
from typing import Any, TypeAlias, override

from kubernetes_asyncio.client import V1ConfigMap, V1Deployment
from structlog.stdlib import BoundLogger

from ..constants import DISTRIBUTION_KIND
from ..exceptions import KubernetesError
from ..models.domain.kubernetes import ObjectKey, WatchEventType
from ..storage.kubernetes.distribution import DistributionStorage
from ..storage.kubernetes.watcher import WatchEvent
from ..timeout import Timeout
from .workqueue import WorkQueue

__all__ = [
    "ChangeDetector",
    "DistributionLookup",
    "IndexedLookup",
    "ScanLookup",
    "config_map_refs",
    "spec_diff",
]

OperatorConfigHandler: TypeAlias = Callable[
    [Mapping[str, str]], Awaitable[None]
]
"""Callback invoked with the data of the operator ConfigMap."""


def spec_diff(old: Any, new: Any, path: str = "spec") -> list[str]:
    """List the paths at which two specifications differ.

    Parameters
    ----------
    old
        Previous value.
    new
        New value.
    path
        Path of the values, used as the prefix of the returned paths.

    Returns
    -------
    list of str
        Dotted paths of every changed leaf, empty if the values are equal.
    """
    if isinstance(old, dict) and isinstance(new, dict):
        changes = []
        for key in sorted(old.keys() | new.keys()):
            child = f"{path}.{key}"
            changes.extend(spec_diff(old.get(key), new.get(key), child))
        return changes
    return [] if old == new else [path]


def config_map_refs(obj: dict[str, Any]) -> set[ObjectKey]:
    """Extract the ConfigMaps referenced by a Distribution.

    This works on the unparsed object so that references can be indexed
    even if other parts of the object are invalid. A reference without a
    namespace refers to the namespace of the Distribution.

    Parameters
    ----------
    obj
        Distribution as returned by the Kubernetes API.

    Returns
    -------
    set of ObjectKey
        Referenced user configuration and CA bundle ConfigMaps.
    """
    namespace = obj.get("metadata", {}).get("namespace", "")
    server = (obj.get("spec") or {}).get("server") or {}
    sources = [
        server.get("userConfig") or {},
        (server.get("tlsConfig") or {}).get("caBundle") or {},
    ]
    refs = set()
    for source in sources:
        if not isinstance(source, dict) or not source.get("configMapName"):
            continue
        ref_namespace = source.get("configMapNamespace") or namespace
        refs.add(ObjectKey(ref_namespace, source["configMapName"]))
    return refs


class DistributionLookup(metaclass=ABCMeta):
    """Find the Distributions that reference a ConfigMap."""

    @abstractmethod
    async def lookup(self, config_map: ObjectKey) -> set[ObjectKey] | None:
        """Find the Distributions referencing a ConfigMap.

        Parameters
        ----------
        config_map
            Namespace and name of the ConfigMap.

        Returns
        -------
        set of ObjectKey or None
            Keys of the referencing Distributions, or `None` if this lookup
            cannot answer the question.

        Raises
        ------
        KubernetesError
            Raised if the lookup needed Kubernetes and the API call failed.
        """


class IndexedLookup(DistributionLookup):
    """Look up Distributions in an in-memory index of their references.

    The index is maintained from the Distribution watch. It cannot answer
    queries until it has been filled from a complete list of Distributions,
    since until then an empty result may only mean the Distribution has not
    been seen yet.
    """

    def __init__(self) -> None:
        self._refs: dict[ObjectKey, set[ObjectKey]] = {}
        self._index: dict[ObjectKey, set[ObjectKey]] = {}
        self._synced = False

    @property
    def synced(self) -> bool:
        """Whether the index has been filled from a complete list."""
        return self._synced

    @override
    async def lookup(self, config_map: ObjectKey) -> set[ObjectKey] | None:
        if not self._synced:
            return None
        return set(self._index.get(config_map, ()))

    def remove(self, key: ObjectKey) -> None:
        """Remove a deleted Distribution from the index."""
        for ref in self._refs.pop(key, set()):
            owners = self._index.get(ref)
            if owners is None:
                continue
            owners.discard(key)
            if not owners:
                del self._index[ref]

    def replace(self, objs: Iterable[dict[str, Any]]) -> None:
        """Rebuild the index from a complete list of Distributions."""
        self._refs.clear()
        self._index.clear()
        for obj in objs:
            self.update(obj)
        self._synced = True

    def update(self, obj: dict[str, Any]) -> None:
        """Record the current references of a Distribution."""
        key = ObjectKey.from_object(obj)
        self.remove(key)
        refs = config_map_refs(obj)
        self._refs[key] = refs
        for ref in refs:
            self._index.setdefault(ref, set()).add(key)


class ScanLookup(DistributionLookup):
    """Look up Distributions by listing and inspecting all of them.

    Parameters
    ----------
    storage
        Storage for Distributions.
    namespace
        Namespace to search, or `None` for all namespaces.
    timeout
        Timeout for the list call.
    """

    def __init__(
        self,
        storage: DistributionStorage,
        namespace: str | None,
        timeout: timedelta,
    ) -> None:
        self._storage = storage
        self._namespace = namespace
        self._timeout = timeout

    @override
    async def lookup(self, config_map: ObjectKey) -> set[ObjectKey] | None:
        objs = await self._storage.list(
            self._namespace, Timeout(self._timeout)
        )
        return {
            ObjectKey.from_object(o)
            for o in objs
            if config_map in config_map_refs(o)
        }


class ChangeDetector:
    """Decide which Kubernetes events require a reconcile.

    Events for Distributions are queued only if their specification changed,
    so that the status updates written by the operator itself do not cause
    further reconciles. ConfigMap events are mapped to the Distributions
    that reference the ConfigMap, and events for managed Deployments are
    mapped to the owning Distribution.

    Parameters
    ----------
    queue
        Work queue of Distributions to reconcile.
    index
        Index of ConfigMap references, maintained by this class.
    scan
        Lookup used when the index has no answer.
    is_operator_config
        Predicate identifying the operator ConfigMap by namespace and name.
    on_operator_config
        Called with the data of the operator ConfigMap when it changes.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        queue: WorkQueue,
        index: IndexedLookup,
        scan: DistributionLookup,
        is_operator_config: Callable[[str, str], bool],
        on_operator_config: OperatorConfigHandler,
        logger: BoundLogger,
    ) -> None:
        self._queue = queue
        self._index = index
        self._scan = scan
        self._is_operator_config = is_operator_config
        self._on_operator_config = on_operator_config
        self._logger = logger
        self._specs: dict[ObjectKey, Any] = {}

    def known_keys(self) -> list[ObjectKey]:
        """Return the keys of all Distributions seen so far."""
        return list(self._specs)

    def enqueue_all(self) -> None:
        """Queue every known Distribution."""
        for key in self._specs:
            self._queue.add(key)

    async def handle_config_map_event(
        self, event: WatchEvent[V1ConfigMap]
    ) -> None:
        """Queue the Distributions affected by a ConfigMap change.

        Parameters
        ----------
        event
            ConfigMap watch event.
        """
        metadata = event.object.metadata
        key = ObjectKey(metadata.namespace, metadata.name)
        if self._is_operator_config(key.namespace, key.name):
            if event.action == WatchEventType.DELETED:
                msg = "Operator ConfigMap deleted, keeping current settings"
                self._logger.warning(msg)
                return
            await self._on_operator_config(event.object.data or {})
            return

        try:
            owners = await self._index.lookup(key)
            if not owners:
                owners = await self._scan.lookup(key)
        except KubernetesError as e:
            msg = "Unable to find users of ConfigMap, queuing everything"
            self._logger.warning(msg, config_map=str(key), error=str(e))
            self.enqueue_all()
            return
        for owner in sorted(owners or (), key=str):
            self._logger.info(
                "Referenced ConfigMap changed",
                config_map=str(key),
                distribution=str(owner),
                action=event.action.value,
            )
            self._queue.add(owner)

    async def handle_deployment_event(
        self, event: WatchEvent[V1Deployment]
    ) -> None:
        """Queue the Distribution owning a Deployment that changed.

        Parameters
        ----------
        event
            Deployment watch event.
        """
        metadata = event.object.metadata
        for owner in metadata.owner_references or []:
            if owner.kind == DISTRIBUTION_KIND:
                self._queue.add(ObjectKey(metadata.namespace, owner.name))

    async def handle_distribution_event(
        self, event: WatchEvent[dict[str, Any]]
    ) -> None:
        """Queue a Distribution if the event requires a reconcile.

        Updates that leave the spec unchanged are dropped. Every status
        write by the operator itself changes `version.lastUpdated`, so
        queuing those updates would reconcile each Distribution in a loop.
        Changes outside the spec are picked up by the periodic resync.

        Parameters
        ----------
        event
            Distribution watch event.
        """
        obj = event.object
        key = ObjectKey.from_object(obj)
        if event.action == WatchEventType.DELETED:
            self._logger.info("Distribution deleted", distribution=str(key))
            self._specs.pop(key, None)
            self._index.remove(key)
            self._queue.forget(key)
            self._queue.add(key)
            return

        self._index.update(obj)
        spec = copy.deepcopy(obj.get("spec"))
        if key in self._specs:
            changes = spec_diff(self._specs[key], spec)
            self._specs[key] = spec
            if not changes:
                return
            self._logger.info(
                "Distribution spec changed",
                distribution=str(key),
                changes=changes,
            )
        else:
            self._specs[key] = spec
        self._queue.add(key)

    def resync(self, objs: list[dict[str, Any]]) -> None:
        """Refresh all state from a complete list and queue everything.

        This catches any events missed by the watches.

        Parameters
        ----------
        objs
            All Distributions, as returned by the Kubernetes API.
        """
        self._index.replace(objs)
        self._specs = {
            ObjectKey.from_object(o): copy.deepcopy(o.get("spec"))
            for o in objs
        }
        self.enqueue_all()
