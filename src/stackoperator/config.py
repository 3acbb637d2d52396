"""Global configuration parsing."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Annotated, Self

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    model_validator,
)
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict
from safir.logging import LogLevel, Profile
from safir.pydantic import HumanTimedelta

from .constants import (
    DEFAULT_DISTRIBUTIONS,
    DEFAULT_OPERATOR_NAMESPACE,
    HEALTH_PROBE_TIMEOUT,
    INITIALIZING_REQUEUE_DELAY,
    KUBERNETES_REQUEST_TIMEOUT,
    MANIFESTS_PATH,
    OPERATOR_CONFIG_MAP,
    RESYNC_INTERVAL,
)

__all__ = [
    "BackoffConfig",
    "Config",
]


class BackoffConfig(BaseModel):
    """Backoff applied to retries of failed reconciles."""

    model_config = ConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    initial: Annotated[
        HumanTimedelta,
        Field(
            title="Initial delay",
            description="Delay before the first retry of a failed reconcile",
        ),
    ] = timedelta(seconds=1)

    maximum: Annotated[
        HumanTimedelta,
        Field(
            title="Maximum delay",
            description=(
                "Upper bound on the retry delay. The delay doubles with each"
                " consecutive failure of the same Distribution until it"
                " reaches this value."
            ),
        ),
    ] = timedelta(minutes=5)

    @model_validator(mode="after")
    def _validate_bounds(self) -> Self:
        if self.initial > self.maximum:
            raise ValueError("Initial backoff delay exceeds maximum delay")
        return self


class Config(BaseSettings):
    """Distribution operator configuration."""

    model_config = SettingsConfigDict(
        alias_generator=to_camel, extra="forbid", populate_by_name=True
    )

    backoff: Annotated[
        BackoffConfig,
        Field(title="Retry backoff for failed reconciles"),
    ] = BackoffConfig()

    distributions: Annotated[
        dict[str, str],
        Field(
            title="Distribution catalog",
            description=(
                "Mapping of distribution names, as used in the"
                " ``spec.server.distribution.name`` field of a Distribution,"
                " to the container image that runs that distribution. Images"
                " may be overridden at runtime through the ``image-overrides``"
                " key of the operator ConfigMap."
            ),
        ),
    ] = DEFAULT_DISTRIBUTIONS

    health_probe_timeout: Annotated[
        HumanTimedelta,
        Field(
            title="Health probe timeout",
            description=(
                "Timeout for requests to the providers and version endpoints"
                " of a running server"
            ),
        ),
    ] = HEALTH_PROBE_TIMEOUT

    initializing_requeue: Annotated[
        HumanTimedelta,
        Field(
            title="Initializing requeue delay",
            description=(
                "How long to wait before reconciling a Distribution again"
                " while its Deployment is still converging on the desired"
                " replica count"
            ),
        ),
    ] = INITIALIZING_REQUEUE_DELAY

    kubernetes_timeout: Annotated[
        HumanTimedelta,
        Field(
            title="Kubernetes timeout",
            description=(
                "Overall timeout for the Kubernetes API calls made during a"
                " single reconcile"
            ),
        ),
    ] = KUBERNETES_REQUEST_TIMEOUT

    log_level: Annotated[
        LogLevel,
        Field(
            title="Log level",
            description="Python logging level",
            examples=[LogLevel.INFO],
        ),
    ] = LogLevel.INFO

    manifests_path: Annotated[
        Path,
        Field(
            title="Manifest template directory",
            description=(
                "Directory holding the ``kustomization.yaml`` file and the"
                " templates for the objects created for each Distribution. If"
                " the directory has no ``kustomization.yaml``, its ``default``"
                " subdirectory is used instead."
            ),
        ),
    ] = MANIFESTS_PATH

    max_concurrent_reconciles: Annotated[
        int,
        Field(
            title="Concurrent reconciles",
            description=(
                "Number of Distributions that may be reconciled at the same"
                " time. A single Distribution is never reconciled by more"
                " than one worker at once."
            ),
            ge=1,
        ),
    ] = 4

    name: Annotated[
        str,
        Field(
            title="Name of application",
            description="Used when reporting problems to Slack",
        ),
    ] = "stack-operator"

    operator_config_map: Annotated[
        str,
        Field(
            title="Operator ConfigMap",
            description=(
                "Name of the ConfigMap in the operator namespace holding"
                " feature flags and distribution image overrides. It is"
                " created with default settings if missing."
            ),
        ),
    ] = OPERATOR_CONFIG_MAP

    operator_namespace: Annotated[
        str,
        Field(
            title="Operator namespace",
            description=(
                "Namespace in which the operator runs. Used to find the"
                " operator ConfigMap and to allow traffic from the operator"
                " through generated network policies."
            ),
            validation_alias=AliasChoices(
                "OPERATOR_NAMESPACE", "operatorNamespace"
            ),
        ),
    ] = DEFAULT_OPERATOR_NAMESPACE

    operator_version: Annotated[
        str | None,
        Field(
            title="Operator version",
            description="Version reported in the status of Distributions",
            validation_alias=AliasChoices(
                "OPERATOR_VERSION", "operatorVersion"
            ),
        ),
    ] = None

    path_prefix: Annotated[
        str,
        Field(
            title="URL prefix for operator API",
            description="Prefix for the external routes of the operator",
        ),
    ] = "/stack-operator"

    profile: Annotated[
        Profile,
        Field(
            title="Application logging profile",
            description=(
                "``production`` uses JSON logging. ``development`` uses"
                " logging that may be easier for humans to read but that"
                " cannot be easily parsed by computers or Google Log Explorer."
            ),
            examples=[Profile.development],
        ),
    ] = Profile.production

    resync_interval: Annotated[
        HumanTimedelta,
        Field(
            title="Resync interval",
            description=(
                "How frequently to reconcile every Distribution even if no"
                " events were seen for it"
            ),
        ),
    ] = RESYNC_INTERVAL

    slack_webhook: Annotated[
        SecretStr | None,
        Field(
            title="Slack webhook for alerts",
            description=(
                "If set, uncaught exceptions in the operator background"
                " tasks will be reported to Slack via this webhook"
            ),
            validation_alias=AliasChoices(
                "STACK_OPERATOR_SLACK_WEBHOOK", "slackWebhook"
            ),
        ),
    ] = None

    watch_namespace: Annotated[
        str | None,
        Field(
            title="Watched namespace",
            description=(
                "If set, only Distributions in this namespace are reconciled."
                " Otherwise, Distributions in all namespaces are reconciled."
            ),
        ),
    ] = None

    @classmethod
    def from_file(cls, path: Path) -> Self:
        """Load the operator configuration from a YAML file.

        Parameters
        ----------
        path
            Path to the configuration file.
        """
        with path.open("r") as f:
            return cls.model_validate(yaml.safe_load(f) or {})
