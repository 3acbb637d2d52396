"""Validation and management of ConfigMaps consumed by the server."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from structlog.stdlib import BoundLogger

from ..constants import (
    CA_BUNDLE_ANNOTATION,
    CONFIG_MAP_KEY_PATTERN,
    DEFAULT_CA_BUNDLE_KEY,
    INSTANCE_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    MAX_CONFIG_MAP_KEY_LENGTH,
    PART_OF_LABEL,
    PART_OF_VALUE,
    USER_CONFIG_ANNOTATION,
    USER_CONFIG_KEY,
)
from ..exceptions import (
    InvalidCABundleError,
    InvalidConfigMapKeyError,
    MissingConfigMapError,
    MissingConfigMapKeyError,
    ReconcileError,
)
from ..models.domain.kubernetes import ObjectKey
from ..models.domain.resources import Resource, ResourceMap
from ..models.v1.distribution import Distribution
from ..storage.kubernetes.objects import KubernetesObjectStorage
from ..timeout import Timeout
from .apply import ApplyEngine
from .hashing import config_map_hash

__all__ = [
    "ConfigMapService",
    "ObservedConfig",
    "parse_ca_bundle",
    "validate_config_map_key",
]

_KEY_REGEX = re.compile(CONFIG_MAP_KEY_PATTERN)


@dataclass
class ObservedConfig:
    """Configuration observed while reconciling ConfigMaps."""

    hashes: dict[str, str] = field(default_factory=dict)
    """Content hashes keyed by pod template annotation."""

    ca_bundle: bool = False
    """Whether the managed CA bundle ConfigMap exists and must be mounted."""


@dataclass
class _PendingConfig:
    """Validated configuration waiting to be written."""

    annotation: str
    """Pod template annotation receiving the content hash."""

    name: str
    """Name of the managed ConfigMap."""

    data: dict[str, str] | None
    """Data of the managed ConfigMap, or `None` if none is needed."""

    source: dict[str, Any] | None = None
    """Referenced ConfigMap to hash, or `None` to hash the managed one."""

    keys: list[str] = field(default_factory=list)
    """Keys of the hashed ConfigMap consumed by the server."""


def validate_config_map_key(
    key: str, *, namespace: str | None = None, name: str | None = None
) -> None:
    """Check that a ConfigMap key can safely be used as a file name.

    Parameters
    ----------
    key
        Key to check.
    namespace
        Namespace of the Distribution, for error reporting.
    name
        Name of the Distribution, for error reporting.

    Raises
    ------
    InvalidConfigMapKeyError
        Raised if the key is empty, too long, or contains characters that
        are not allowed.
    """
    prefix = f"failed to validate ConfigMap key '{key}'"
    if not key:
        msg = "ConfigMap key cannot be empty"
    elif len(key) > MAX_CONFIG_MAP_KEY_LENGTH:
        limit = MAX_CONFIG_MAP_KEY_LENGTH
        msg = f"{prefix}: too long (max {limit} characters)"
    elif ".." in key or "/" in key:
        msg = f"{prefix}: contains invalid path characters"
    elif not _KEY_REGEX.match(key):
        msg = (
            f"{prefix}: contains invalid characters. Only alphanumeric"
            " characters, hyphens, underscores, and dots are allowed"
        )
    else:
        return
    raise InvalidConfigMapKeyError(msg, namespace=namespace, name=name)


def parse_ca_bundle(data: str) -> list[x509.Certificate]:
    """Parse PEM-encoded certificates.

    Parameters
    ----------
    data
        Contents of a CA bundle.

    Returns
    -------
    list of cryptography.x509.Certificate
        Parsed certificates.

    Raises
    ------
    ValueError
        Raised if the data contains no certificates or a certificate block
        could not be parsed.
    """
    certificates = x509.load_pem_x509_certificates(data.encode())
    if not certificates:
        raise ValueError("No certificates found")
    return certificates


class ConfigMapService:
    """Reconcile the ConfigMaps referenced by a Distribution.

    Referenced ConfigMaps are validated and hashed. Inline configuration,
    user configuration from another namespace, and validated CA certificates
    are written to ConfigMaps owned by the Distribution in its namespace so
    that they can be mounted by the server pods.

    Parameters
    ----------
    storage
        Storage for Kubernetes objects.
    apply_engine
        Used to write the managed ConfigMaps with the usual ownership rules.
    logger
        Logger to use.
    """

    def __init__(
        self,
        storage: KubernetesObjectStorage,
        apply_engine: ApplyEngine,
        logger: BoundLogger,
    ) -> None:
        self._storage = storage
        self._apply = apply_engine
        self._logger = logger

    async def reconcile(
        self, distribution: Distribution, timeout: Timeout
    ) -> ObservedConfig:
        """Validate referenced ConfigMaps and update the managed ones.

        All referenced ConfigMaps are read and validated before anything is
        written, so a validation failure leaves the cluster untouched.

        Parameters
        ----------
        distribution
            Distribution being reconciled.
        timeout
            Timeout on the whole operation.

        Returns
        -------
        ObservedConfig
            Content hashes and whether a CA bundle is configured.

        Raises
        ------
        InvalidCABundleError
            Raised if a CA bundle key does not hold valid certificates.
        InvalidConfigMapKeyError
            Raised if a CA bundle key is not acceptable.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        MissingConfigMapError
            Raised if a referenced ConfigMap does not exist.
        MissingConfigMapKeyError
            Raised if a referenced ConfigMap key does not exist.
        """
        user_config = await self._prepare_user_config(distribution, timeout)
        ca_bundle = await self._prepare_ca_bundle(distribution, timeout)

        observed = ObservedConfig(ca_bundle=ca_bundle is not None)
        for pending in (user_config, ca_bundle):
            if pending:
                digest = await self._write(distribution, pending, timeout)
                observed.hashes[pending.annotation] = digest

        obsolete = ResourceMap()
        name = distribution.managed_user_config_name
        if distribution.user_config_volume != name:
            obsolete.add(self._build_config_map(distribution, name, {}))
        if not ca_bundle:
            name = distribution.managed_ca_bundle_name
            obsolete.add(self._build_config_map(distribution, name, {}))
        await self._apply.delete_owned(obsolete, distribution, timeout)
        return observed

    async def _prepare_user_config(
        self, distribution: Distribution, timeout: Timeout
    ) -> _PendingConfig | None:
        """Validate the user configuration without writing anything."""
        user_config = distribution.spec.server.user_config
        source = distribution.user_config_map
        if not user_config or not source:
            return None
        managed_name = distribution.managed_user_config_name

        if user_config.custom_config:
            data = {USER_CONFIG_KEY: user_config.custom_config}
            return _PendingConfig(USER_CONFIG_ANNOTATION, managed_name, data)

        referenced = await self._get_config_map(
            distribution, source, "userConfig", timeout
        )
        data = referenced.get("data") or {}
        if USER_CONFIG_KEY not in data:
            msg = f"ConfigMap {source} has no key {USER_CONFIG_KEY}"
            raise MissingConfigMapKeyError(
                msg, namespace=distribution.namespace, name=distribution.name
            )

        # A ConfigMap from another namespace cannot be mounted, so copy it.
        copy = None
        if source.namespace != distribution.namespace:
            copy = {USER_CONFIG_KEY: data[USER_CONFIG_KEY]}
        return _PendingConfig(
            USER_CONFIG_ANNOTATION, managed_name, copy, source=referenced
        )

    async def _prepare_ca_bundle(
        self, distribution: Distribution, timeout: Timeout
    ) -> _PendingConfig | None:
        """Validate the CA bundle without writing anything."""
        tls = distribution.spec.server.tls_config
        source = distribution.ca_bundle_config_map
        if not tls or not tls.ca_bundle or not source:
            return None
        namespace = distribution.namespace
        name = distribution.name
        keys = tls.ca_bundle.keys
        for key in keys:
            validate_config_map_key(key, namespace=namespace, name=name)

        referenced = await self._get_config_map(
            distribution, source, "tlsConfig.caBundle", timeout
        )
        data = referenced.get("data") or {}
        pem = []
        for key in keys:
            if key not in data:
                msg = f"ConfigMap {source} has no key {key}"
                raise MissingConfigMapKeyError(
                    msg, namespace=namespace, name=name
                )
            try:
                certificates = parse_ca_bundle(data[key])
            except ValueError as e:
                msg = f"Key {key} in ConfigMap {source} is not valid: {e!s}"
                raise InvalidCABundleError(
                    msg, namespace=namespace, name=name
                ) from e
            pem.extend(
                c.public_bytes(Encoding.PEM).decode() for c in certificates
            )

        self._logger.debug(
            "Validated CA bundle",
            config_map=str(source),
            certificates=len(pem),
        )
        return _PendingConfig(
            CA_BUNDLE_ANNOTATION,
            distribution.managed_ca_bundle_name,
            {DEFAULT_CA_BUNDLE_KEY: "".join(pem)},
            source=referenced,
            keys=list(keys),
        )

    async def _write(
        self,
        distribution: Distribution,
        pending: _PendingConfig,
        timeout: Timeout,
    ) -> str:
        """Write a validated managed ConfigMap and return its content hash."""
        stored = None
        if pending.data is not None:
            stored = await self._store(
                distribution, pending.name, pending.data, timeout
            )
        hashed = pending.source or stored
        if hashed is None:
            msg = f"Nothing to hash for ConfigMap {pending.name}"
            raise RuntimeError(msg)
        return config_map_hash(hashed, pending.keys)

    async def _store(
        self,
        distribution: Distribution,
        name: str,
        data: dict[str, str],
        timeout: Timeout,
    ) -> dict[str, Any]:
        """Write a ConfigMap owned by the Distribution.

        Raises
        ------
        ReconcileError
            Raised if a ConfigMap of that name exists but belongs to
            something else.
        """
        config_map = self._build_config_map(distribution, name, data)
        stored = await self._apply.apply_resource(
            config_map, distribution, timeout
        )
        if stored is None:
            msg = f"ConfigMap {name} exists and is not managed by the operator"
            raise ReconcileError(
                msg, namespace=distribution.namespace, name=distribution.name
            )
        return stored

    def _build_config_map(
        self, distribution: Distribution, name: str, data: dict[str, str]
    ) -> Resource:
        return Resource(
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {
                    "name": name,
                    "namespace": distribution.namespace,
                    "labels": {
                        "app": "llama-stack",
                        INSTANCE_LABEL: distribution.name,
                        MANAGED_BY_LABEL: MANAGED_BY_VALUE,
                        PART_OF_LABEL: PART_OF_VALUE,
                    },
                },
                "data": data,
            }
        )

    async def _get_config_map(
        self,
        distribution: Distribution,
        key: ObjectKey,
        reference: str,
        timeout: Timeout,
    ) -> dict[str, Any]:
        config_map = await self._storage.get(
            "v1", "ConfigMap", key.name, key.namespace, timeout
        )
        if config_map is None:
            msg = f"ConfigMap {key} referenced by {reference} not found"
            raise MissingConfigMapError(
                msg, namespace=distribution.namespace, name=distribution.name
            )
        return config_map
