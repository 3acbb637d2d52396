"""Tests for computing the status of a Distribution."""

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
import respx
from httpx import AsyncClient
from structlog.stdlib import BoundLogger

from stackoperator.exceptions import MissingConfigMapError
from stackoperator.models.v1.distribution import (
    ConditionStatus,
    ConditionType,
    Distribution,
    DistributionPhase,
    DistributionStatus,
)
from stackoperator.services.status import StatusBuilder, observe_deployment
from stackoperator.storage.health import HealthProbeClient
from stackoperator.timeout import Timeout

from ..support.data import read_input_distribution
from ..support.health import register_mock_server
from ..support.kubernetes import MockCluster

_CATALOG = {"starter": "docker.io/llamastack/distribution-starter:latest"}
_BASIC_URL = "http://basic-service.llama.svc.cluster.local:8321"


@pytest_asyncio.fixture
async def builder(
    mock_kubernetes: MockCluster, logger: BoundLogger
) -> AsyncIterator[StatusBuilder]:
    async with AsyncClient() as http_client:
        health_client = HealthProbeClient(
            http_client, timedelta(seconds=5), logger
        )
        yield StatusBuilder(
            storage=mock_kubernetes,
            health_client=health_client,
            catalog=_CATALOG,
            operator_version="0.3.0",
            logger=logger,
        )


def add_deployment(
    mock_kubernetes: MockCluster,
    name: str,
    *,
    replicas: int,
    ready: int | None,
) -> None:
    deployment: dict[str, Any] = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": "llama"},
        "spec": {"replicas": replicas},
        "status": {},
    }
    if ready is not None:
        deployment["status"]["readyReplicas"] = ready
    mock_kubernetes.add_for_test(deployment)


def add_service(mock_kubernetes: MockCluster, name: str) -> None:
    mock_kubernetes.add_for_test(
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": f"{name}-service", "namespace": "llama"},
        }
    )


def make_timeout() -> Timeout:
    return Timeout(timedelta(seconds=30))


def read_distribution(
    name: str, status: DistributionStatus | None = None
) -> Distribution:
    obj = read_input_distribution(name)
    if status:
        obj["status"] = status.to_kubernetes()
    return Distribution.model_validate(obj)


def test_observe_deployment() -> None:
    observation = observe_deployment(None, 1)
    assert observation.phase == DistributionPhase.PENDING
    assert observation.reason == "DeploymentNotFound"

    expected = [
        (0, 3, DistributionPhase.INITIALIZING, "initializing: 0/3"),
        (2, 3, DistributionPhase.INITIALIZING, "scaling: 2/3"),
        (3, 3, DistributionPhase.READY, "ready: 3/3"),
        (4, 3, DistributionPhase.INITIALIZING, "scaling down: 4/3"),
        (0, 0, DistributionPhase.READY, "ready: 0/0"),
    ]
    for ready, desired, phase, message in expected:
        deployment = {"status": {"readyReplicas": ready}}
        observation = observe_deployment(deployment, desired)
        assert observation.phase == phase
        assert observation.message == (
            f"Deployment is {message} replicas ready"
        )
        assert observation.ready_replicas == ready
        if phase == DistributionPhase.READY:
            assert observation.status == ConditionStatus.TRUE
        else:
            assert observation.status == ConditionStatus.FALSE

    # A Deployment without status has no ready replicas.
    observation = observe_deployment({"spec": {"replicas": 1}}, 1)
    assert observation.phase == DistributionPhase.INITIALIZING
    assert observation.ready_replicas == 0


@pytest.mark.asyncio
async def test_pending(builder: StatusBuilder) -> None:
    distribution = read_distribution("basic")

    status = await builder.build(distribution, None, make_timeout())

    assert status.phase == DistributionPhase.PENDING
    assert status.available_replicas == 0
    assert status.service_url is None
    assert status.route_url is None
    conditions = {c.type: c for c in status.conditions}
    assert list(conditions) == [
        ConditionType.DEPLOYMENT_READY,
        ConditionType.STORAGE_READY,
        ConditionType.SERVICE_READY,
        ConditionType.HEALTH_CHECK,
    ]
    deployment_ready = conditions[ConditionType.DEPLOYMENT_READY]
    assert deployment_ready.status == ConditionStatus.FALSE
    assert deployment_ready.reason == "DeploymentNotFound"
    storage_ready = conditions[ConditionType.STORAGE_READY]
    assert storage_ready.status == ConditionStatus.TRUE
    assert storage_ready.reason == "EphemeralStorage"
    service_ready = conditions[ConditionType.SERVICE_READY]
    assert service_ready.status == ConditionStatus.FALSE
    assert service_ready.reason == "ServiceNotFound"
    health = conditions[ConditionType.HEALTH_CHECK]
    assert health.status == ConditionStatus.FALSE
    assert health.reason == "DeploymentNotReady"

    assert status.distribution_config.active_distribution == "starter"
    assert status.distribution_config.available_distributions == _CATALOG
    assert status.distribution_config.providers == []
    assert status.version.operator_version == "0.3.0"
    assert status.version.server_version is None
    assert status.version.last_updated


@pytest.mark.asyncio
async def test_initializing(
    builder: StatusBuilder, mock_kubernetes: MockCluster
) -> None:
    obj = read_input_distribution("basic")
    obj["spec"]["replicas"] = 3
    distribution = Distribution.model_validate(obj)
    add_deployment(mock_kubernetes, "basic", replicas=3, ready=2)

    status = await builder.build(distribution, None, make_timeout())

    assert status.phase == DistributionPhase.INITIALIZING
    assert status.available_replicas == 2
    condition = status.get_condition(ConditionType.DEPLOYMENT_READY)
    assert condition
    assert condition.reason == "DeploymentInitializing"
    assert "2/3 replicas ready" in condition.message


@pytest.mark.asyncio
async def test_ready(
    builder: StatusBuilder,
    mock_kubernetes: MockCluster,
    respx_mock: respx.Router,
) -> None:
    distribution = read_distribution("basic")
    add_deployment(mock_kubernetes, "basic", replicas=1, ready=1)
    add_service(mock_kubernetes, "basic")
    register_mock_server(respx_mock, _BASIC_URL, version="0.2.23")

    status = await builder.build(distribution, None, make_timeout())

    assert status.phase == DistributionPhase.READY
    assert status.available_replicas == 1
    assert status.service_url == _BASIC_URL
    for condition in status.conditions:
        assert condition.status == ConditionStatus.TRUE
    health = status.get_condition(ConditionType.HEALTH_CHECK)
    assert health
    assert health.reason == "HealthCheckPassed"
    providers = status.distribution_config.providers
    assert [p.provider_id for p in providers] == ["ollama", "meta-reference"]
    assert providers[0].health
    assert providers[0].health.status == "OK"
    assert status.version.server_version == "0.2.23"

    serialized = status.to_kubernetes()
    assert serialized["serviceURL"] == _BASIC_URL
    assert serialized["routeURL"] is None
    assert serialized["phase"] == "Ready"
    assert serialized["availableReplicas"] == 1
    provider = serialized["distributionConfig"]["providers"][0]
    assert provider["provider_id"] == "ollama"


@pytest.mark.asyncio
async def test_probe_failure(
    builder: StatusBuilder,
    mock_kubernetes: MockCluster,
    respx_mock: respx.Router,
) -> None:
    add_deployment(mock_kubernetes, "basic", replicas=1, ready=1)
    add_service(mock_kubernetes, "basic")
    register_mock_server(respx_mock, _BASIC_URL, status_code=500)
    previous = DistributionStatus()
    previous.version.server_version = "0.2.22"
    distribution = read_distribution("basic", previous)

    status = await builder.build(distribution, None, make_timeout())

    # A failing probe does not change the phase and the last known server
    # version is kept.
    assert status.phase == DistributionPhase.READY
    health = status.get_condition(ConditionType.HEALTH_CHECK)
    assert health
    assert health.status == ConditionStatus.UNKNOWN
    assert health.reason == "HealthCheckFailed"
    assert status.distribution_config.providers == []
    assert status.version.server_version == "0.2.22"


@pytest.mark.asyncio
async def test_unparseable_probe(
    builder: StatusBuilder,
    mock_kubernetes: MockCluster,
    respx_mock: respx.Router,
) -> None:
    add_deployment(mock_kubernetes, "basic", replicas=1, ready=1)
    add_service(mock_kubernetes, "basic")
    register_mock_server(respx_mock, _BASIC_URL, providers=[{"api": "x"}])
    distribution = read_distribution("basic")

    status = await builder.build(distribution, None, make_timeout())

    health = status.get_condition(ConditionType.HEALTH_CHECK)
    assert health
    assert health.status == ConditionStatus.UNKNOWN
    assert status.version.server_version == "0.2.22"


@pytest.mark.asyncio
async def test_error(
    builder: StatusBuilder, mock_kubernetes: MockCluster
) -> None:
    distribution = read_distribution("basic")
    add_deployment(mock_kubernetes, "basic", replicas=1, ready=1)
    error = MissingConfigMapError(
        "ConfigMap llama/cfg referenced by userConfig not found"
    )

    status = await builder.build(distribution, error, make_timeout())

    # An error always wins over the state of the Deployment and the server
    # is not probed.
    assert status.phase == DistributionPhase.FAILED
    assert status.available_replicas == 1
    condition = status.get_condition(ConditionType.DEPLOYMENT_READY)
    assert condition
    assert condition.status == ConditionStatus.FALSE
    assert condition.reason == "ReconcileFailed"
    assert condition.message == (
        "Resource reconciliation failed: ConfigMap llama/cfg referenced by"
        " userConfig not found"
    )
    health = status.get_condition(ConditionType.HEALTH_CHECK)
    assert health
    assert health.reason == "DeploymentNotReady"


@pytest.mark.asyncio
async def test_transition_time(
    builder: StatusBuilder, mock_kubernetes: MockCluster
) -> None:
    add_deployment(mock_kubernetes, "basic", replicas=1, ready=0)
    first = await builder.build(
        read_distribution("basic"), None, make_timeout()
    )
    long_ago = datetime(2024, 1, 1, tzinfo=UTC)
    for condition in first.conditions:
        condition.last_transition_time = long_ago

    # Nothing changed, so all transition times are kept.
    second = await builder.build(
        read_distribution("basic", first), None, make_timeout()
    )
    for condition in second.conditions:
        assert condition.last_transition_time == long_ago

    # Only the condition whose status changed gets a new transition time.
    add_service(mock_kubernetes, "basic")
    third = await builder.build(
        read_distribution("basic", second), None, make_timeout()
    )
    for condition in third.conditions:
        if condition.type == ConditionType.SERVICE_READY:
            assert condition.status == ConditionStatus.TRUE
            assert condition.last_transition_time > long_ago
        else:
            assert condition.last_transition_time == long_ago


@pytest.mark.asyncio
async def test_storage(
    builder: StatusBuilder, mock_kubernetes: MockCluster
) -> None:
    distribution = read_distribution("storage")

    status = await builder.build(distribution, None, make_timeout())
    condition = status.get_condition(ConditionType.STORAGE_READY)
    assert condition
    assert condition.status == ConditionStatus.FALSE
    assert condition.reason == "StorageNotFound"

    pvc = {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": "persistent-pvc", "namespace": "llama"},
        "status": {"phase": "Pending"},
    }
    mock_kubernetes.add_for_test(pvc)
    status = await builder.build(distribution, None, make_timeout())
    condition = status.get_condition(ConditionType.STORAGE_READY)
    assert condition
    assert condition.reason == "StorageNotBound"
    assert condition.message == "PVC is not bound: Pending"

    mock_kubernetes.patch_for_test(
        "PersistentVolumeClaim",
        "llama",
        "persistent-pvc",
        {"status": {"phase": "Bound"}},
    )
    status = await builder.build(distribution, None, make_timeout())
    condition = status.get_condition(ConditionType.STORAGE_READY)
    assert condition
    assert condition.status == ConditionStatus.TRUE


@pytest.mark.asyncio
async def test_no_ports(builder: StatusBuilder) -> None:
    obj = read_input_distribution("basic")
    obj["spec"]["server"]["containerSpec"] = {"port": 0}
    distribution = Distribution.model_validate(obj)

    status = await builder.build(distribution, None, make_timeout())

    condition = status.get_condition(ConditionType.SERVICE_READY)
    assert condition
    assert condition.status == ConditionStatus.TRUE
    assert condition.reason == "ServiceDisabled"
    assert status.service_url is None


@pytest.mark.asyncio
async def test_route_url(
    builder: StatusBuilder, mock_kubernetes: MockCluster
) -> None:
    obj = read_input_distribution("basic")
    obj["spec"]["network"] = {"exposeRoute": True}
    distribution = Distribution.model_validate(obj)
    ingress: dict[str, Any] = {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": {"name": "basic-ingress", "namespace": "llama"},
        "spec": {"rules": [{"host": "llama.example.com"}]},
    }
    mock_kubernetes.add_for_test(ingress)

    status = await builder.build(distribution, None, make_timeout())
    assert status.route_url == "http://llama.example.com"

    balancer = {"ingress": [{"hostname": "lb.example.com"}]}
    mock_kubernetes.patch_for_test(
        "Ingress",
        "llama",
        "basic-ingress",
        {"status": {"loadBalancer": balancer}},
    )
    status = await builder.build(distribution, None, make_timeout())
    assert status.route_url == "http://lb.example.com"


@pytest.mark.asyncio
async def test_autoscaled(
    builder: StatusBuilder, mock_kubernetes: MockCluster
) -> None:
    distribution = read_distribution("scaled")

    # The autoscaler scaled the Deployment to 5 replicas, which is what the
    # pods must converge to rather than the replicas of the Distribution.
    add_deployment(mock_kubernetes, "scaled", replicas=5, ready=3)
    status = await builder.build(distribution, None, make_timeout())

    assert status.phase == DistributionPhase.INITIALIZING
    condition = status.get_condition(ConditionType.DEPLOYMENT_READY)
    assert condition
    assert "3/5 replicas ready" in condition.message
