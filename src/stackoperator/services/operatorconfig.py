"""Loading of the operator-level ConfigMap."""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

import yaml
from pydantic import ValidationError
from structlog.stdlib import BoundLogger

from ..constants import (
    FEATURE_FLAGS_KEY,
    IMAGE_OVERRIDES_KEY,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
)
from ..exceptions import OperatorConfigError
from ..models.domain.operatorconfig import (
    FeatureFlags,
    OperatorConfig,
    is_valid_image_reference,
)
from ..storage.kubernetes.objects import KubernetesObjectStorage
from ..timeout import Timeout

__all__ = [
    "DEFAULT_FEATURE_FLAGS",
    "OperatorConfigService",
    "parse_feature_flags",
    "parse_image_overrides",
    "parse_operator_config",
]

DEFAULT_FEATURE_FLAGS = "enableNetworkPolicy:\n  enabled: false\n"
"""Feature flags written when the operator ConfigMap is created."""


def parse_feature_flags(raw: str | None) -> FeatureFlags:
    """Parse the feature flags key of the operator ConfigMap.

    Parameters
    ----------
    raw
        YAML document, or `None` if the key is absent.

    Returns
    -------
    FeatureFlags
        Parsed flags, with defaults for anything not set.

    Raises
    ------
    OperatorConfigError
        Raised if the flags are not valid YAML or do not match the expected
        structure.
    """
    if not raw or not raw.strip():
        return FeatureFlags()
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        msg = f"Unable to parse {FEATURE_FLAGS_KEY}: {e!s}"
        raise OperatorConfigError(msg) from e
    if data is None:
        return FeatureFlags()
    try:
        return FeatureFlags.model_validate(data)
    except ValidationError as e:
        msg = f"Invalid {FEATURE_FLAGS_KEY}: {e!s}"
        raise OperatorConfigError(msg) from e


def parse_image_overrides(
    raw: str | None, logger: BoundLogger
) -> dict[str, str]:
    """Parse the image overrides key of the operator ConfigMap.

    Overrides are advisory, so problems are logged rather than raised.
    Unparseable YAML yields no overrides and invalid image references are
    skipped.

    Parameters
    ----------
    raw
        YAML mapping of catalog names to images, or `None` if the key is
        absent.
    logger
        Logger for problems with the overrides.

    Returns
    -------
    dict of str
        Valid overrides keyed by catalog name.
    """
    if not raw or not raw.strip():
        return {}
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        msg = f"Unable to parse {IMAGE_OVERRIDES_KEY}, ignoring overrides"
        logger.error(msg, error=str(e))
        return {}
    if not isinstance(data, dict):
        msg = f"{IMAGE_OVERRIDES_KEY} is not a mapping, ignoring overrides"
        logger.error(msg)
        return {}

    overrides = {}
    for name, image in data.items():
        if not isinstance(image, str) or not is_valid_image_reference(image):
            logger.warning(
                "Skipping invalid image override",
                distribution=str(name),
                image=str(image),
            )
            continue
        overrides[str(name)] = image
    return overrides


def parse_operator_config(
    data: Mapping[str, str], logger: BoundLogger
) -> OperatorConfig:
    """Build the operator settings from the data of the ConfigMap.

    Parameters
    ----------
    data
        Data of the operator ConfigMap.
    logger
        Logger for problems with the image overrides.

    Returns
    -------
    OperatorConfig
        New immutable settings.

    Raises
    ------
    OperatorConfigError
        Raised if the feature flags are invalid.
    """
    flags = parse_feature_flags(data.get(FEATURE_FLAGS_KEY))
    overrides = parse_image_overrides(data.get(IMAGE_OVERRIDES_KEY), logger)
    return OperatorConfig(
        feature_flags=flags, image_overrides=MappingProxyType(overrides)
    )


class OperatorConfigService:
    """Read the operator ConfigMap, creating it if necessary.

    Parameters
    ----------
    storage
        Storage for Kubernetes objects.
    namespace
        Namespace of the operator.
    name
        Name of the operator ConfigMap.
    logger
        Logger to use.
    """

    def __init__(
        self,
        storage: KubernetesObjectStorage,
        namespace: str,
        name: str,
        logger: BoundLogger,
    ) -> None:
        self._storage = storage
        self._namespace = namespace
        self._name = name
        self._logger = logger

    def is_operator_config(self, namespace: str, name: str) -> bool:
        """Whether a ConfigMap is the operator ConfigMap."""
        return namespace == self._namespace and name == self._name

    async def load(self, timeout: Timeout) -> OperatorConfig:
        """Read the operator settings.

        If the ConfigMap does not exist, it is created with the default
        feature flags.

        Parameters
        ----------
        timeout
            Timeout on the whole operation.

        Returns
        -------
        OperatorConfig
            Current operator settings.

        Raises
        ------
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        OperatorConfigError
            Raised if the feature flags are invalid.
        """
        config_map = await self._storage.get(
            "v1", "ConfigMap", self._name, self._namespace, timeout
        )
        if config_map is None:
            config_map = await self._create_default(timeout)
        return self.parse(config_map.get("data") or {})

    def parse(self, data: Mapping[str, str]) -> OperatorConfig:
        """Parse the data of the operator ConfigMap.

        Raises
        ------
        OperatorConfigError
            Raised if the feature flags are invalid.
        """
        config = parse_operator_config(data, self._logger)
        self._logger.info(
            "Loaded operator configuration",
            network_policy=config.enable_network_policy,
            image_overrides=sorted(config.image_overrides),
        )
        return config

    async def _create_default(self, timeout: Timeout) -> dict[str, Any]:
        self._logger.info(
            "Creating default operator ConfigMap",
            config_map=f"{self._namespace}/{self._name}",
        )
        body = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": self._name,
                "namespace": self._namespace,
                "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            },
            "data": {FEATURE_FLAGS_KEY: DEFAULT_FEATURE_FLAGS},
        }
        return await self._storage.create(body, timeout)
