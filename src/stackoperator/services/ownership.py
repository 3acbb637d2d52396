"""Checks whether an existing object belongs to a Distribution."""

from __future__ import annotations

from abc import ABCMeta, abstractmethod
from typing import Any, override

from ..constants import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    PART_OF_LABEL,
    PART_OF_VALUE,
)
from ..models.v1.distribution import Distribution

__all__ = [
    "ClusterRoleBindingOwnershipChecker",
    "ClusterScopedOwnershipChecker",
    "NamespacedOwnershipChecker",
    "OwnershipChecker",
    "get_ownership_checker",
]


class OwnershipChecker(metaclass=ABCMeta):
    """Decide whether the operator may modify an existing object."""

    @abstractmethod
    def is_owned(
        self, obj: dict[str, Any], distribution: Distribution
    ) -> bool:
        """Check whether an object belongs to a Distribution.

        Parameters
        ----------
        obj
            Object as currently stored in Kubernetes.
        distribution
            Distribution being reconciled.

        Returns
        -------
        bool
            `True` if the object was created for this Distribution.
        """


class NamespacedOwnershipChecker(OwnershipChecker):
    """Namespaced objects are owned if they reference the Distribution UID."""

    @override
    def is_owned(
        self, obj: dict[str, Any], distribution: Distribution
    ) -> bool:
        owners = obj.get("metadata", {}).get("ownerReferences") or []
        uid = distribution.metadata.uid
        return bool(uid) and any(o.get("uid") == uid for o in owners)


class ClusterScopedOwnershipChecker(OwnershipChecker):
    """Cluster-scoped objects cannot have owner references, so use labels."""

    @override
    def is_owned(
        self, obj: dict[str, Any], distribution: Distribution
    ) -> bool:
        labels = obj.get("metadata", {}).get("labels") or {}
        return (
            labels.get(MANAGED_BY_LABEL) == MANAGED_BY_VALUE
            and labels.get(PART_OF_LABEL) == PART_OF_VALUE
        )


class ClusterRoleBindingOwnershipChecker(ClusterScopedOwnershipChecker):
    """Role bindings must also carry the name derived from the Distribution.

    The labels alone are shared by the bindings of all Distributions, so the
    binding must additionally have the namespace-qualified name and bind the
    ServiceAccount of the Distribution.
    """

    @override
    def is_owned(
        self, obj: dict[str, Any], distribution: Distribution
    ) -> bool:
        if not super().is_owned(obj, distribution):
            return False
        name = obj.get("metadata", {}).get("name")
        if name != distribution.cluster_role_binding_name:
            return False
        return any(
            s.get("kind") == "ServiceAccount"
            and s.get("name") == distribution.service_account_name
            and s.get("namespace") == distribution.namespace
            for s in obj.get("subjects") or []
        )


def get_ownership_checker(kind: str, *, namespaced: bool) -> OwnershipChecker:
    """Choose the ownership check for a kind once its scope is known.

    Parameters
    ----------
    kind
        Kind of the object.
    namespaced
        Whether objects of that kind are namespaced.

    Returns
    -------
    OwnershipChecker
        Appropriate checker.
    """
    if namespaced:
        return NamespacedOwnershipChecker()
    if kind == "ClusterRoleBinding":
        return ClusterRoleBindingOwnershipChecker()
    return ClusterScopedOwnershipChecker()
