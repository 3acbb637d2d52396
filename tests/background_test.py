"""Tests for the background reconcile processing."""

from typing import Any

import pytest
import respx
from anys import ANY_AWARE_DATETIME_STR
from safir.testing.slack import MockSlackWebhook

from stackoperator.config import Config
from stackoperator.constants import (
    DISTRIBUTION_KIND,
    FEATURE_FLAGS_KEY,
    USER_CONFIG_ANNOTATION,
)
from stackoperator.exceptions import KubernetesError
from stackoperator.factory import Factory
from stackoperator.models.domain.kubernetes import WatchEventType

from .support.data import read_input_distribution
from .support.health import register_mock_server
from .support.kubernetes import MockCluster, MockWatchStorage
from .support.wait import wait_for


def deployment_annotations(mock_kubernetes: MockCluster, name: str) -> Any:
    deployment = mock_kubernetes.get_for_test("Deployment", "llama", name)
    if not deployment:
        return None
    return deployment["spec"]["template"]["metadata"].get("annotations", {})


def get_phase(mock_kubernetes: MockCluster, name: str) -> str | None:
    obj = mock_kubernetes.get_for_test(DISTRIBUTION_KIND, "llama", name)
    if not obj:
        return None
    return (obj.get("status") or {}).get("phase")


def operator_config_map(config: Config, flags: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": config.operator_config_map,
            "namespace": config.operator_namespace,
        },
        "data": {FEATURE_FLAGS_KEY: flags},
    }


@pytest.mark.asyncio
async def test_startup(factory: Factory, mock_kubernetes: MockCluster) -> None:
    mock_kubernetes.add_for_test(read_input_distribution("basic"))
    mock_kubernetes.add_for_test(read_input_distribution("storage"))

    await factory.start_background_services()

    # Existing Distributions are reconciled without any watch events.
    await wait_for(lambda: get_phase(mock_kubernetes, "basic") is not None)
    await wait_for(
        lambda: get_phase(mock_kubernetes, "persistent") is not None
    )
    assert get_phase(mock_kubernetes, "basic") == "Initializing"
    assert mock_kubernetes.get_for_test("Deployment", "llama", "persistent")
    assert mock_kubernetes.get_for_test(
        "PersistentVolumeClaim", "llama", "persistent-pvc"
    )

    # The initializing Distributions are waiting to be checked again.
    delayed = ["llama/basic", "llama/persistent"]
    await wait_for(lambda: factory.queue.snapshot().delayed == delayed)
    assert factory.queue.snapshot().failing == {}


@pytest.mark.asyncio
async def test_spec_change(
    factory: Factory,
    mock_kubernetes: MockCluster,
    mock_watches: MockWatchStorage,
) -> None:
    await factory.start_background_services()
    obj = mock_kubernetes.add_for_test(read_input_distribution("basic"))
    mock_watches.send_distribution_for_test(WatchEventType.ADDED, obj)
    await wait_for(
        lambda: mock_kubernetes.get_for_test("Deployment", "llama", "basic")
        is not None
    )

    obj = mock_kubernetes.patch_for_test(
        DISTRIBUTION_KIND, "llama", "basic", {"spec": {"replicas": 2}}
    )
    mock_watches.send_distribution_for_test(WatchEventType.MODIFIED, obj)

    def replicas() -> int:
        deployment = mock_kubernetes.get_for_test(
            "Deployment", "llama", "basic"
        )
        assert deployment
        return deployment["spec"]["replicas"]

    await wait_for(lambda: replicas() == 2)
    await wait_for(
        lambda: mock_kubernetes.get_for_test(
            "PodDisruptionBudget", "llama", "basic-pdb"
        )
        is not None
    )


@pytest.mark.asyncio
async def test_config_map_change(
    factory: Factory,
    mock_kubernetes: MockCluster,
    mock_watches: MockWatchStorage,
) -> None:
    config_map = mock_kubernetes.add_for_test(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "cfg", "namespace": "llama"},
            "data": {"config.yaml": "version: 2\n"},
        }
    )
    mock_kubernetes.add_for_test(read_input_distribution("user-config"))
    await factory.start_background_services()
    await wait_for(
        lambda: deployment_annotations(mock_kubernetes, "configured")
        is not None
    )
    annotations = deployment_annotations(mock_kubernetes, "configured")
    first_hash = annotations[USER_CONFIG_ANNOTATION]

    # Changing the referenced ConfigMap rolls the Deployment.
    config_map = mock_kubernetes.patch_for_test(
        "ConfigMap", "llama", "cfg", {"data": {"config.yaml": "version: 3\n"}}
    )
    mock_watches.send_config_map_for_test(
        WatchEventType.MODIFIED, config_map
    )

    def current_hash() -> str:
        annotations = deployment_annotations(mock_kubernetes, "configured")
        return annotations[USER_CONFIG_ANNOTATION]

    await wait_for(lambda: current_hash() != first_hash)


@pytest.mark.asyncio
async def test_deployment_ready(
    factory: Factory,
    mock_kubernetes: MockCluster,
    mock_watches: MockWatchStorage,
    respx_mock: respx.Router,
) -> None:
    register_mock_server(
        respx_mock, "http://basic-service.llama.svc.cluster.local:8321"
    )
    mock_kubernetes.add_for_test(read_input_distribution("basic"))
    await factory.start_background_services()
    await wait_for(lambda: get_phase(mock_kubernetes, "basic") is not None)

    # The Deployment watch notices the change in readiness without waiting
    # for the initializing requeue delay.
    deployment = mock_kubernetes.patch_for_test(
        "Deployment", "llama", "basic", {"status": {"readyReplicas": 1}}
    )
    mock_watches.send_deployment_for_test(WatchEventType.MODIFIED, deployment)
    await wait_for(lambda: get_phase(mock_kubernetes, "basic") == "Ready")

    obj = mock_kubernetes.get_for_test(DISTRIBUTION_KIND, "llama", "basic")
    assert obj
    assert obj["status"]["version"]["serverVersion"] == "0.2.22"
    assert obj["status"]["version"]["lastUpdated"] == ANY_AWARE_DATETIME_STR


@pytest.mark.asyncio
async def test_operator_config_change(
    config: Config,
    factory: Factory,
    mock_kubernetes: MockCluster,
    mock_watches: MockWatchStorage,
    mock_slack: MockSlackWebhook,
) -> None:
    mock_kubernetes.add_for_test(read_input_distribution("basic"))
    await factory.start_background_services()
    await wait_for(lambda: get_phase(mock_kubernetes, "basic") is not None)
    policy_id = ("NetworkPolicy", "llama", "basic-network-policy")
    assert not mock_kubernetes.get_for_test(*policy_id)

    # Enabling network policies reconciles every Distribution.
    config_map = operator_config_map(
        config, "enableNetworkPolicy:\n  enabled: true\n"
    )
    mock_watches.send_config_map_for_test(
        WatchEventType.MODIFIED, config_map
    )
    await wait_for(
        lambda: mock_kubernetes.get_for_test(*policy_id) is not None
    )
    assert factory.create_reconciler().operator_config.enable_network_policy

    # Invalid settings are reported and the previous ones are kept.
    config_map = operator_config_map(config, "enableNetworkPolicy: [")
    mock_watches.send_config_map_for_test(
        WatchEventType.MODIFIED, config_map
    )
    await wait_for(lambda: len(mock_slack.messages) == 1)
    assert "featureFlags" in str(mock_slack.messages[0])
    assert factory.create_reconciler().operator_config.enable_network_policy


@pytest.mark.asyncio
async def test_failure_alert(
    factory: Factory,
    mock_kubernetes: MockCluster,
    mock_slack: MockSlackWebhook,
) -> None:
    def callback(verb: str, kind: str, name: str | None) -> None:
        if verb in ("apply", "create") and kind == "Deployment":
            raise KubernetesError(
                "Error applying object",
                kind=kind,
                namespace="llama",
                name=name,
                status=500,
                body="Internal error",
            )

    mock_kubernetes.error_callback = callback
    mock_kubernetes.add_for_test(read_input_distribution("basic"))
    await factory.start_background_services()

    await wait_for(lambda: len(mock_slack.messages) == 1)
    assert "Failed to apply manifests" in str(mock_slack.messages[0])
    assert get_phase(mock_kubernetes, "basic") == "Failed"
    state = factory.queue.snapshot()
    assert state.failing == {"llama/basic": 1}
    assert state.delayed == ["llama/basic"]

    # Once Kubernetes recovers, the retry succeeds without a further alert.
    mock_kubernetes.error_callback = None
    await wait_for(
        lambda: get_phase(mock_kubernetes, "basic") == "Initializing"
    )
    await wait_for(lambda: factory.queue.snapshot().failing == {})
    assert len(mock_slack.messages) == 1
