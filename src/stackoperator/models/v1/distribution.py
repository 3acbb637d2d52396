"""Models for the Distribution custom resource and its status."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from ...constants import (
    DEFAULT_CA_BUNDLE_KEY,
    DEFAULT_SERVER_PORT,
    DISTRIBUTION_GROUP,
    DISTRIBUTION_KIND,
    DISTRIBUTION_VERSION,
    SCC_BINDING_SUFFIX,
    SERVICE_ACCOUNT_SUFFIX,
)
from ..domain.kubernetes import ObjectKey

__all__ = [
    "AllowedFromSpec",
    "AutoscalingSpec",
    "CABundleConfig",
    "Condition",
    "ConditionStatus",
    "ConditionType",
    "ContainerSpec",
    "Distribution",
    "DistributionConfig",
    "DistributionMetadata",
    "DistributionPhase",
    "DistributionSpec",
    "DistributionStatus",
    "DistributionType",
    "NetworkSpec",
    "PodDisruptionBudgetSpec",
    "PodOverrides",
    "ProviderHealth",
    "ProviderInfo",
    "ResourceRequirements",
    "ServerSpec",
    "StorageSpec",
    "TLSConfig",
    "UserConfigSpec",
    "VersionInfo",
]


class CamelModel(BaseModel):
    """Base for models of the custom resource, which uses camelCase keys.

    Unknown fields are ignored so that objects written against a newer
    version of the custom resource definition can still be reconciled.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, extra="ignore", populate_by_name=True
    )


class DistributionType(CamelModel):
    """Which server to run, either from the catalog or as an image."""

    name: str | None = Field(
        None,
        title="Catalog name",
        description="Name of an entry in the distribution catalog",
        examples=["starter"],
    )

    image: str | None = Field(
        None,
        title="Container image",
        description="Image reference to run directly, bypassing the catalog",
        examples=["quay.io/example/custom-stack:1.0"],
    )

    @model_validator(mode="after")
    def _validate_exclusive(self) -> Self:
        if self.name and self.image:
            raise ValueError("Only one of name or image may be set")
        return self


class ResourceRequirements(CamelModel):
    """Resource requests and limits for the server container."""

    requests: dict[str, str | int | float] = Field({}, title="Requests")

    limits: dict[str, str | int | float] = Field({}, title="Limits")


class ContainerSpec(CamelModel):
    """Overrides for the server container."""

    name: str | None = Field(None, title="Container name")

    port: int | None = Field(
        None,
        title="Server port",
        description=(
            f"Port on which the server listens, {DEFAULT_SERVER_PORT} if not"
            " given. Setting this to 0 disables the Service."
        ),
        ge=0,
        le=65535,
    )

    resources: ResourceRequirements | None = Field(None, title="Resources")

    env: list[dict[str, Any]] = Field(
        [],
        title="Environment variables",
        description="Kubernetes ``EnvVar`` objects added after the defaults",
    )

    command: list[str] = Field([], title="Command override")

    args: list[str] = Field([], title="Arguments override")


class StorageSpec(CamelModel):
    """Persistent storage for the server."""

    size: str | None = Field(None, title="Volume size", examples=["20Gi"])

    mount_path: str | None = Field(None, title="Mount path")


class UserConfigSpec(CamelModel):
    """User-supplied server run configuration.

    Either a reference to an existing ConfigMap or inline content, which the
    operator stores in a ConfigMap of its own.
    """

    config_map_name: str | None = Field(None, title="ConfigMap name")

    config_map_namespace: str | None = Field(
        None,
        title="ConfigMap namespace",
        description="Defaults to the namespace of the Distribution",
    )

    custom_config: str | None = Field(
        None,
        title="Inline configuration",
        description="Contents of the server ``config.yaml``",
    )

    @model_validator(mode="after")
    def _validate_exclusive(self) -> Self:
        if self.config_map_name and self.custom_config:
            msg = "Only one of configMapName or customConfig may be set"
            raise ValueError(msg)
        return self


class CABundleConfig(CamelModel):
    """Reference to a ConfigMap holding additional trusted CA certificates."""

    config_map_name: str = Field(..., title="ConfigMap name")

    config_map_namespace: str | None = Field(
        None,
        title="ConfigMap namespace",
        description="Defaults to the namespace of the Distribution",
    )

    config_map_keys: list[str] = Field(
        [],
        title="ConfigMap keys",
        description=(
            "Keys holding PEM-encoded certificates. Defaults to"
            f" ``{DEFAULT_CA_BUNDLE_KEY}``."
        ),
    )

    @property
    def keys(self) -> list[str]:
        """Keys to consume, with the default applied."""
        return self.config_map_keys or [DEFAULT_CA_BUNDLE_KEY]


class TLSConfig(CamelModel):
    """TLS settings for outbound connections from the server."""

    ca_bundle: CABundleConfig | None = Field(None, title="CA bundle")


class PodOverrides(CamelModel):
    """Pod-level overrides for the server Deployment."""

    service_account_name: str | None = Field(None, title="Service account")

    volumes: list[dict[str, Any]] = Field([], title="Additional volumes")

    volume_mounts: list[dict[str, Any]] = Field(
        [], title="Additional volume mounts"
    )

    termination_grace_period_seconds: int | None = Field(
        None, title="Termination grace period", ge=0
    )


class AutoscalingSpec(CamelModel):
    """Horizontal autoscaling of the server Deployment."""

    min_replicas: int | None = Field(None, title="Minimum replicas", ge=1)

    max_replicas: int | None = Field(None, title="Maximum replicas", ge=1)

    target_cpu_utilization_percentage: int | None = Field(
        None,
        title="Target CPU utilization",
        alias="targetCPUUtilizationPercentage",
        ge=1,
        le=100,
    )

    target_memory_utilization_percentage: int | None = Field(
        None, title="Target memory utilization", ge=1, le=100
    )


class PodDisruptionBudgetSpec(CamelModel):
    """Disruption budget for the server pods."""

    min_available: int | str | None = Field(None, title="Minimum available")

    max_unavailable: int | str | None = Field(
        None, title="Maximum unavailable"
    )


class AllowedFromSpec(CamelModel):
    """Additional sources of traffic allowed by the network policy."""

    namespaces: list[str] = Field(
        [],
        title="Namespaces",
        description="Namespace names, or ``*`` to allow all namespaces",
    )

    labels: list[str] = Field(
        [],
        title="Namespace labels",
        description="Allow namespaces that carry any of these labels",
    )


class NetworkSpec(CamelModel):
    """Network exposure of the server."""

    expose_route: bool = Field(
        False,
        title="Expose externally",
        description="Whether to create an Ingress for the server",
    )

    allowed_from: AllowedFromSpec | None = Field(None, title="Allowed from")


class ServerSpec(CamelModel):
    """Specification of the server workload."""

    distribution: DistributionType = Field(..., title="Distribution")

    container_spec: ContainerSpec = Field(
        ContainerSpec(), title="Container overrides"
    )

    workers: int | None = Field(
        None,
        title="Server workers",
        description="Number of server worker processes",
        ge=1,
    )

    storage: StorageSpec | None = Field(
        None,
        title="Storage",
        description="If absent, the server uses an emptyDir volume",
    )

    user_config: UserConfigSpec | None = Field(None, title="User config")

    tls_config: TLSConfig | None = Field(None, title="TLS config")

    pod_overrides: PodOverrides | None = Field(None, title="Pod overrides")

    autoscaling: AutoscalingSpec | None = Field(None, title="Autoscaling")

    pod_disruption_budget: PodDisruptionBudgetSpec | None = Field(
        None, title="Pod disruption budget"
    )

    topology_spread_constraints: list[dict[str, Any]] = Field(
        [], title="Topology spread constraints"
    )


class DistributionSpec(CamelModel):
    """Specification of a Distribution."""

    replicas: int = Field(1, title="Replicas", ge=0)

    server: ServerSpec = Field(..., title="Server")

    network: NetworkSpec | None = Field(None, title="Network")


class DistributionPhase(str, Enum):
    """Coarse lifecycle phase of a Distribution."""

    PENDING = "Pending"
    INITIALIZING = "Initializing"
    READY = "Ready"
    FAILED = "Failed"


class ConditionType(str, Enum):
    """Types of conditions reported in the status of a Distribution."""

    DEPLOYMENT_READY = "DeploymentReady"
    STORAGE_READY = "StorageReady"
    SERVICE_READY = "ServiceReady"
    HEALTH_CHECK = "HealthCheck"


class ConditionStatus(str, Enum):
    """Possible values of the status of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(CamelModel):
    """One condition in the status of a Distribution."""

    type: ConditionType = Field(..., title="Condition type")

    status: ConditionStatus = Field(..., title="Condition status")

    reason: str = Field(..., title="Machine-readable reason")

    message: str = Field("", title="Human-readable message")

    last_transition_time: datetime = Field(
        ...,
        title="Last transition",
        description="When the status of the condition last changed",
    )


class ProviderHealth(BaseModel):
    """Health of one provider as reported by the server."""

    model_config = ConfigDict(extra="ignore")

    status: str = Field(..., title="Health status", examples=["OK"])

    message: str | None = Field(None, title="Health message")


class ProviderInfo(BaseModel):
    """One provider configured in the running server.

    The field names follow the server's own API rather than the camelCase
    convention of the rest of the resource.
    """

    model_config = ConfigDict(extra="ignore")

    api: str = Field(..., title="API", examples=["inference"])

    provider_id: str = Field(..., title="Provider ID", examples=["ollama"])

    provider_type: str = Field(
        ..., title="Provider type", examples=["remote::ollama"]
    )

    config: dict[str, Any] = Field({}, title="Provider configuration")

    health: ProviderHealth | None = Field(None, title="Provider health")


class DistributionConfig(CamelModel):
    """Summary of the distribution configuration in use."""

    active_distribution: str | None = Field(
        None,
        title="Active distribution",
        description="Catalog name in use, or ``custom`` for direct images",
    )

    available_distributions: dict[str, str] = Field(
        {}, title="Catalog of distributions and their images"
    )

    providers: list[ProviderInfo] = Field([], title="Providers")


class VersionInfo(CamelModel):
    """Versions of the operator and the server."""

    operator_version: str | None = Field(None, title="Operator version")

    server_version: str | None = Field(None, title="Server version")

    last_updated: datetime | None = Field(None, title="Last updated")


class DistributionStatus(CamelModel):
    """Status of a Distribution, written only by the operator."""

    phase: DistributionPhase = Field(DistributionPhase.PENDING, title="Phase")

    conditions: list[Condition] = Field([], title="Conditions")

    available_replicas: int = Field(0, title="Ready replicas")

    service_url: str | None = Field(None, alias="serviceURL")

    route_url: str | None = Field(None, alias="routeURL")

    distribution_config: DistributionConfig = Field(
        DistributionConfig(), title="Distribution configuration"
    )

    version: VersionInfo = Field(VersionInfo(), title="Versions")

    def get_condition(self, type_: ConditionType) -> Condition | None:
        """Return the condition of a given type, if present."""
        for condition in self.conditions:
            if condition.type == type_:
                return condition
        return None

    def to_kubernetes(self) -> dict[str, Any]:
        """Serialize to the form stored in the status subresource.

        Unset URLs are serialized as `None` so that a merge patch removes any
        previously stored value.
        """
        status = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        status.setdefault("serviceURL", None)
        status.setdefault("routeURL", None)
        return status


class DistributionMetadata(CamelModel):
    """Subset of the Kubernetes object metadata used by the operator."""

    name: str = Field(..., title="Name")

    namespace: str = Field(..., title="Namespace")

    uid: str = Field("", title="UID")

    generation: int | None = Field(None, title="Generation")

    resource_version: str | None = Field(None, title="Resource version")

    labels: dict[str, str] = Field({}, title="Labels")


class Distribution(CamelModel):
    """A Distribution custom resource.

    Besides the parsed object, this provides the names the operator derives
    from the Distribution for the objects it manages.
    """

    api_version: str = Field(
        f"{DISTRIBUTION_GROUP}/{DISTRIBUTION_VERSION}", title="API version"
    )

    kind: str = Field(DISTRIBUTION_KIND, title="Kind")

    metadata: DistributionMetadata = Field(..., title="Metadata")

    spec: DistributionSpec = Field(..., title="Specification")

    status: DistributionStatus | None = Field(None, title="Status")

    @property
    def name(self) -> str:
        """Name of the Distribution."""
        return self.metadata.name

    @property
    def namespace(self) -> str:
        """Namespace of the Distribution."""
        return self.metadata.namespace

    @property
    def key(self) -> ObjectKey:
        """Work queue key of the Distribution."""
        return ObjectKey(namespace=self.namespace, name=self.name)

    @property
    def autoscaling_enabled(self) -> bool:
        """Whether a HorizontalPodAutoscaler manages the replica count."""
        autoscaling = self.spec.server.autoscaling
        return bool(autoscaling and autoscaling.max_replicas)

    @property
    def ca_bundle_config_map(self) -> ObjectKey | None:
        """Referenced CA bundle ConfigMap, if any."""
        tls = self.spec.server.tls_config
        if not tls or not tls.ca_bundle:
            return None
        namespace = tls.ca_bundle.config_map_namespace or self.namespace
        return ObjectKey(namespace, tls.ca_bundle.config_map_name)

    @property
    def cluster_role_binding_name(self) -> str:
        """Name of the ClusterRoleBinding, qualified by namespace."""
        return f"{self.namespace}-{self.name}{SCC_BINDING_SUFFIX}"

    @property
    def container_port(self) -> int:
        """Port on which the server listens."""
        port = self.spec.server.container_spec.port
        return DEFAULT_SERVER_PORT if port is None else port

    @property
    def has_ports(self) -> bool:
        """Whether the server exposes a port, and thus gets a Service."""
        return self.container_port != 0

    @property
    def managed_ca_bundle_name(self) -> str:
        """Name of the ConfigMap holding the validated CA certificates."""
        return f"{self.name}-ca-bundle"

    @property
    def managed_user_config_name(self) -> str:
        """Name of the ConfigMap holding a copy of the user configuration."""
        return f"{self.name}-user-config"

    @property
    def service_account_name(self) -> str:
        """Name of the ServiceAccount used by the server pods."""
        overrides = self.spec.server.pod_overrides
        if overrides and overrides.service_account_name:
            return overrides.service_account_name
        return f"{self.name}{SERVICE_ACCOUNT_SUFFIX}"

    @property
    def service_name(self) -> str:
        """Name of the Service in front of the server."""
        return f"{self.name}-service"

    @property
    def user_config_map(self) -> ObjectKey | None:
        """ConfigMap providing the user configuration, if any.

        For inline configuration this is the ConfigMap managed by the
        operator.
        """
        user_config = self.spec.server.user_config
        if not user_config:
            return None
        if user_config.custom_config:
            return ObjectKey(self.namespace, self.managed_user_config_name)
        if not user_config.config_map_name:
            return None
        namespace = user_config.config_map_namespace or self.namespace
        return ObjectKey(namespace, user_config.config_map_name)

    @property
    def user_config_volume(self) -> str | None:
        """Name of the ConfigMap mounted as the user configuration, if any.

        Pods can only mount ConfigMaps from their own namespace, so inline
        configuration and ConfigMaps in other namespaces are served from a
        copy managed by the operator.
        """
        source = self.user_config_map
        if not source:
            return None
        if source.namespace == self.namespace:
            return source.name
        return self.managed_user_config_name

    def to_owner_reference(self) -> dict[str, Any]:
        """Build an owner reference pointing to this Distribution."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.metadata.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }
