"""Storage layer for Distribution custom resources."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError
from structlog.stdlib import BoundLogger

from ...constants import (
    DISTRIBUTION_GROUP,
    DISTRIBUTION_KIND,
    DISTRIBUTION_VERSION,
)
from ...exceptions import InvalidDistributionError
from ...models.domain.kubernetes import ObjectKey
from ...models.v1.distribution import Distribution, DistributionStatus
from ...timeout import Timeout
from .objects import KubernetesObjectStorage

__all__ = ["DistributionStorage"]


class DistributionStorage:
    """Storage layer for Distribution custom resources.

    Parameters
    ----------
    storage
        Generic object storage used to talk to Kubernetes.
    logger
        Logger to use.
    """

    def __init__(
        self, storage: KubernetesObjectStorage, logger: BoundLogger
    ) -> None:
        self._storage = storage
        self._logger = logger
        self._api_version = f"{DISTRIBUTION_GROUP}/{DISTRIBUTION_VERSION}"

    async def read(
        self, key: ObjectKey, timeout: Timeout
    ) -> Distribution | None:
        """Read and parse a Distribution.

        Parameters
        ----------
        key
            Namespace and name of the Distribution.
        timeout
            Timeout on operation.

        Returns
        -------
        Distribution or None
            Parsed Distribution, or `None` if it does not exist.

        Raises
        ------
        InvalidDistributionError
            Raised if the object could not be parsed.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        obj = await self._storage.get(
            self._api_version,
            DISTRIBUTION_KIND,
            key.name,
            key.namespace,
            timeout,
        )
        if obj is None:
            return None
        return self._parse(obj)

    async def list(
        self, namespace: str | None, timeout: Timeout
    ) -> list[dict[str, Any]]:
        """List Distributions without parsing them.

        Parsing is left to the caller so that one malformed object does not
        prevent handling of the others.

        Parameters
        ----------
        namespace
            Namespace to search, or `None` for all namespaces.
        timeout
            Timeout on operation.

        Returns
        -------
        list of dict
            Distributions found.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        return await self._storage.list(
            self._api_version, DISTRIBUTION_KIND, namespace, timeout
        )

    async def update_status(
        self, key: ObjectKey, status: DistributionStatus, timeout: Timeout
    ) -> None:
        """Write the status of a Distribution.

        Parameters
        ----------
        key
            Namespace and name of the Distribution.
        status
            New status.
        timeout
            Timeout on operation.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        await self._storage.patch_status(
            self._api_version,
            DISTRIBUTION_KIND,
            key.name,
            key.namespace,
            status.to_kubernetes(),
            timeout,
        )

    def _parse(self, obj: dict[str, Any]) -> Distribution:
        try:
            return Distribution.model_validate(obj)
        except ValidationError as e:
            metadata = obj.get("metadata", {})
            namespace = metadata.get("namespace")
            name = metadata.get("name")
            msg = f"Invalid {DISTRIBUTION_KIND}: {e!s}"
            raise InvalidDistributionError(
                msg, namespace=namespace, name=name
            ) from e
