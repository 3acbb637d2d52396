"""Generic storage for Kubernetes objects of any kind.

Rendered manifests may contain objects of any kind, so this storage layer
works on objects in dictionary form and uses the dynamic client of
``kubernetes_asyncio`` to find the API endpoint and scope of each kind from
the discovery information of the API server.
"""

from __future__ import annotations

import asyncio
from typing import Any

from kubernetes_asyncio.client import ApiClient
from kubernetes_asyncio.dynamic import DynamicClient
from kubernetes_asyncio.dynamic.exceptions import (
    DynamicApiError,
    ResourceNotFoundError,
    ResourceNotUniqueError,
)
from kubernetes_asyncio.dynamic.resource import Resource as ApiResource
from structlog.stdlib import BoundLogger

from ...exceptions import KubernetesError, ScopeResolutionError
from ...models.domain.kubernetes import PropagationPolicy
from ...timeout import Timeout

__all__ = ["KubernetesObjectStorage"]


class KubernetesObjectStorage:
    """Storage layer for Kubernetes objects in dictionary form.

    All methods take the ``apiVersion`` and ``kind`` of the object, either
    explicitly or from the object body, and resolve the corresponding API
    resource through server discovery.

    Parameters
    ----------
    api_client
        Kubernetes API client.
    logger
        Logger to use.
    """

    def __init__(self, api_client: ApiClient, logger: BoundLogger) -> None:
        self._api_client = api_client
        self._logger = logger
        self._client: DynamicClient | None = None
        self._lock = asyncio.Lock()

    async def is_namespaced(self, api_version: str, kind: str) -> bool:
        """Determine whether a kind of object lives in a namespace.

        Parameters
        ----------
        api_version
            API version of the kind.
        kind
            Kind of object.

        Returns
        -------
        bool
            `True` if objects of this kind are namespaced, `False` if they
            are cluster-scoped.

        Raises
        ------
        ScopeResolutionError
            Raised if the API server does not know this kind or discovery
            failed.
        """
        resource = await self._resource(api_version, kind)
        return bool(resource.namespaced)

    async def get(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str | None,
        timeout: Timeout,
    ) -> dict[str, Any] | None:
        """Read an object.

        Parameters
        ----------
        api_version
            API version of the object.
        kind
            Kind of the object.
        name
            Name of the object.
        namespace
            Namespace of the object, or `None` if it is cluster-scoped.
        timeout
            Timeout on operation.

        Returns
        -------
        dict or None
            Object, or `None` if it does not exist.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        ScopeResolutionError
            Raised if the kind is not known to the API server.
        """
        resource = await self._resource(api_version, kind)
        client = await self._get_client()
        try:
            obj = await client.get(
                resource,
                name=name,
                namespace=namespace,
                _request_timeout=timeout.left(),
            )
        except DynamicApiError as e:
            if e.status == 404:
                return None
            raise KubernetesError.from_exception(
                "Error reading object",
                e,
                kind=kind,
                namespace=namespace,
                name=name,
            ) from e
        return obj.to_dict()

    async def list(
        self,
        api_version: str,
        kind: str,
        namespace: str | None,
        timeout: Timeout,
        *,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """List objects of a kind.

        Parameters
        ----------
        api_version
            API version of the objects.
        kind
            Kind of the objects.
        namespace
            Namespace to search, or `None` to search all namespaces.
        timeout
            Timeout on operation.
        label_selector
            If given, only return objects matching this label selector.

        Returns
        -------
        list of dict
            Matching objects.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        ScopeResolutionError
            Raised if the kind is not known to the API server.
        """
        resource = await self._resource(api_version, kind)
        client = await self._get_client()
        try:
            objs = await client.get(
                resource,
                namespace=namespace,
                label_selector=label_selector,
                _request_timeout=timeout.left(),
            )
        except DynamicApiError as e:
            raise KubernetesError.from_exception(
                "Error listing objects", e, kind=kind, namespace=namespace
            ) from e
        return objs.to_dict().get("items") or []

    async def create(
        self, body: dict[str, Any], timeout: Timeout
    ) -> dict[str, Any]:
        """Create a new object.

        Parameters
        ----------
        body
            New object. The namespace, if any, is taken from its metadata.
        timeout
            Timeout on operation.

        Returns
        -------
        dict
            Object as stored by the API server.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        ScopeResolutionError
            Raised if the kind is not known to the API server.
        """
        kind = body["kind"]
        name = body["metadata"]["name"]
        namespace = body["metadata"].get("namespace")
        self._logger.debug(f"Creating {kind}", name=name, namespace=namespace)
        resource = await self._resource(body["apiVersion"], kind)
        client = await self._get_client()
        try:
            obj = await client.create(
                resource,
                body=body,
                namespace=namespace,
                _request_timeout=timeout.left(),
            )
        except DynamicApiError as e:
            raise KubernetesError.from_exception(
                "Error creating object",
                e,
                kind=kind,
                namespace=namespace,
                name=name,
            ) from e
        return obj.to_dict()

    async def apply(
        self, body: dict[str, Any], field_manager: str, timeout: Timeout
    ) -> dict[str, Any]:
        """Apply an object with server-side apply.

        Conflicts with other field managers are resolved in favor of the
        given field manager.

        Parameters
        ----------
        body
            Desired state of the object.
        field_manager
            Field manager that owns the fields set in the body.
        timeout
            Timeout on operation.

        Returns
        -------
        dict
            Object as stored by the API server.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        ScopeResolutionError
            Raised if the kind is not known to the API server.
        """
        kind = body["kind"]
        name = body["metadata"]["name"]
        namespace = body["metadata"].get("namespace")
        self._logger.debug(f"Applying {kind}", name=name, namespace=namespace)
        resource = await self._resource(body["apiVersion"], kind)
        client = await self._get_client()
        try:
            obj = await client.server_side_apply(
                resource,
                body=body,
                name=name,
                namespace=namespace,
                field_manager=field_manager,
                force_conflicts=True,
                _request_timeout=timeout.left(),
            )
        except DynamicApiError as e:
            raise KubernetesError.from_exception(
                "Error applying object",
                e,
                kind=kind,
                namespace=namespace,
                name=name,
            ) from e
        return obj.to_dict()

    async def delete(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str | None,
        timeout: Timeout,
        *,
        propagation_policy: PropagationPolicy = PropagationPolicy.BACKGROUND,
    ) -> None:
        """Delete an object.

        If the object does not exist, this is silently treated as success.

        Parameters
        ----------
        api_version
            API version of the object.
        kind
            Kind of the object.
        name
            Name of the object.
        namespace
            Namespace of the object, or `None` if it is cluster-scoped.
        timeout
            Timeout on operation.
        propagation_policy
            Propagation policy for dependent objects.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        ScopeResolutionError
            Raised if the kind is not known to the API server.
        """
        self._logger.debug(f"Deleting {kind}", name=name, namespace=namespace)
        resource = await self._resource(api_version, kind)
        client = await self._get_client()
        body = {"propagationPolicy": propagation_policy.value}
        try:
            await client.delete(
                resource,
                name=name,
                namespace=namespace,
                body=body,
                _request_timeout=timeout.left(),
            )
        except DynamicApiError as e:
            if e.status == 404:
                return
            raise KubernetesError.from_exception(
                "Error deleting object",
                e,
                kind=kind,
                namespace=namespace,
                name=name,
            ) from e

    async def patch_status(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str,
        status: dict[str, Any],
        timeout: Timeout,
    ) -> None:
        """Replace fields of the status subresource of an object.

        The status is sent as a JSON merge patch, so keys with `None` values
        are removed from the stored status and lists are replaced wholesale.

        Parameters
        ----------
        api_version
            API version of the object.
        kind
            Kind of the object.
        name
            Name of the object.
        namespace
            Namespace of the object.
        status
            New status.
        timeout
            Timeout on operation.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        ScopeResolutionError
            Raised if the kind is not known to the API server.
        """
        resource = await self._resource(api_version, kind)
        client = await self._get_client()
        try:
            await client.patch(
                resource.subresources["status"],
                body={"status": status},
                name=name,
                namespace=namespace,
                content_type="application/merge-patch+json",
                _request_timeout=timeout.left(),
            )
        except DynamicApiError as e:
            raise KubernetesError.from_exception(
                "Error updating status",
                e,
                kind=kind,
                namespace=namespace,
                name=name,
            ) from e

    async def _get_client(self) -> DynamicClient:
        """Create the dynamic client on first use.

        Creating the client performs API discovery, which requires a running
        event loop, so this cannot be done in the constructor.
        """
        async with self._lock:
            if not self._client:
                self._client = await DynamicClient(self._api_client)
            return self._client

    async def _resource(self, api_version: str, kind: str) -> ApiResource:
        """Find the API resource for a kind.

        Raises
        ------
        ScopeResolutionError
            Raised if the kind could not be resolved.
        """
        client = await self._get_client()
        try:
            return await client.resources.get(
                api_version=api_version, kind=kind
            )
        except (
            DynamicApiError,
            ResourceNotFoundError,
            ResourceNotUniqueError,
        ) as e:
            raise ScopeResolutionError(api_version, kind) from e
