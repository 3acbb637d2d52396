"""Watch a Kubernetes namespace or cluster for events."""

from __future__ import annotations

import asyncio
import math
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Self

from kubernetes_asyncio.client import ApiException
from kubernetes_asyncio.watch import Watch
from structlog.stdlib import BoundLogger

from ...exceptions import KubernetesError
from ...models.domain.kubernetes import WatchEventType

__all__ = [
    "KubernetesWatcher",
    "WatchEvent",
]


@dataclass
class WatchEvent[T]:
    """Parsed event from a Kubernetes watch.

    This model is intended only for use within the Kubernetes storage layer
    and the watch services that consume it.
    """

    action: WatchEventType
    """Action the event represents."""

    object: T
    """Affected Kubernetes object."""

    @classmethod
    def from_event(cls, event: dict[str, Any], object_type: type[T]) -> Self:
        """Create a `WatchEvent` from a watch event.

        Parameters
        ----------
        event
            Event as returned by the Kubernetes watch API.
        object_type
            Expected type of the object.

        Raises
        ------
        TypeError
            Raised if the type of the object in the watch event was incorrect.
        """
        action = WatchEventType(event["type"])
        if object_type.__name__ == "dict":
            return cls(action=action, object=event["raw_object"])
        obj = event["object"]
        if not isinstance(obj, object_type):
            real_type = type(obj).__name__
            expected_type = object_type.__name__
            msg = f"Watch object was of type {real_type}, not {expected_type}"
            raise TypeError(msg)
        return cls(action=action, object=obj)


class KubernetesWatcher[T]:
    """Watch Kubernetes for events.

    This wrapper around the watch API of the Kubernetes client implements
    retries and resource version handling. Unlike a watch used to wait for a
    single change, the watches run by the operator are meant to last for the
    lifetime of the process, so server-side timeouts restart the watch from
    the last seen resource version rather than ending it.

    Parameters
    ----------
    method
        API list method that supports the watch API.
    object_type
        Type of object being watched. This cannot be autodiscovered from the
        method and therefore must be provided by the caller and must match
        the type of object returned by the method. For custom objects, this
        should be a `dict` type.
    kind
        Kubernetes kind of object being watched, for error reporting.
    namespace
        Namespace to watch, if the method is namespaced.
    group
        Group of custom object.
    version
        Version of custom object.
    plural
        Plural of custom object.
    label_selector
        Only watch objects matching this label selector.
    resource_version
        Resource version at which to start the watch.
    timeout
        Server-side timeout for each individual watch request.
    logger
        Logger to use.

    Raises
    ------
    ValueError
        Raised if ``timeout`` is specified but is less than one second.
    """

    def __init__(
        self,
        *,
        method: Callable[..., Awaitable[Any]],
        object_type: type[T],
        kind: str,
        namespace: str | None = None,
        group: str | None = None,
        version: str | None = None,
        plural: str | None = None,
        label_selector: str | None = None,
        resource_version: str | None = None,
        timeout: timedelta | None = None,
        logger: BoundLogger,
    ) -> None:
        self._method = method
        self._type = object_type
        self._kind = kind
        self._namespace = namespace
        self._logger = logger
        self._stopped = False

        # Build the arguments to the method being watched.
        timeout_seconds = None
        if timeout:
            timeout_seconds = int(math.ceil(timeout.total_seconds()))
            if timeout_seconds <= 0:
                raise ValueError("Watch timeout specified but <= 0")
        args = {
            "group": group,
            "version": version,
            "plural": plural,
            "namespace": namespace,
            "label_selector": label_selector,
            "resource_version": resource_version,
            "timeout_seconds": timeout_seconds,
        }
        self._args = {k: v for k, v in args.items() if v is not None}
        self._watch = Watch(return_type=object_type)

    async def close(self) -> None:
        """Close the internal API client used by the watch API."""
        self._watch.stop()
        await self._watch.close()

    def stop(self) -> None:
        """Stop a watch in progress."""
        self._watch.stop()
        self._stopped = True

    async def watch(self) -> AsyncIterator[WatchEvent[T]]:
        """Watch Kubernetes for events until stopped.

        The resource version of each event is remembered so that, when the
        server ends a watch request, the next request resumes where the
        previous one stopped. If that resource version is too old to still be
        known to Kubernetes, the API call returns a 410 error, in which case
        the watch is retried without a resource version. This can miss
        events, which is why the operator also resyncs periodically.

        Yields
        ------
        WatchEvent
            Parsed event.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server during the
            watch.
        """
        args = self._args.copy()
        while not self._stopped:
            try:
                async with self._watch.stream(self._method, **args) as s:
                    async for event in s:
                        parsed = WatchEvent.from_event(event, self._type)
                        version = _resource_version(event)
                        if version:
                            args["resource_version"] = version
                        yield parsed
            except ApiException as e:
                if e.status == 410:
                    if "resource_version" in args:
                        version = args["resource_version"]
                        msg = "Resource version expired, retrying watch"
                        self._logger.info(
                            msg, kind=self._kind, resource_version=version
                        )
                        del args["resource_version"]
                        continue

                    # Kubernetes can return 410 without a resource version if
                    # there are long delays between events. Wait a second so
                    # that we don't spam the control plane if every request
                    # returns 410.
                    msg = "Watch expired (no resource version), retrying"
                    self._logger.info(msg, kind=self._kind)
                    await asyncio.sleep(1)
                    continue

                raise KubernetesError.from_exception(
                    "Error watching objects",
                    e,
                    kind=self._kind,
                    namespace=self._namespace,
                ) from e


def _resource_version(event: dict[str, Any]) -> str | None:
    """Extract the resource version of the object in a raw watch event."""
    raw = event.get("raw_object")
    if not isinstance(raw, dict):
        return None
    return raw.get("metadata", {}).get("resourceVersion")
