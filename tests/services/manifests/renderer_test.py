"""Tests for rendering the manifests of a Distribution."""

import shutil
from pathlib import Path

import pytest

from stackoperator.constants import MANIFESTS_PATH
from stackoperator.exceptions import ManifestError
from stackoperator.models.domain.manifests import ManifestContext
from stackoperator.models.domain.operatorconfig import (
    FeatureFlag,
    FeatureFlags,
    OperatorConfig,
)
from stackoperator.models.domain.resources import ResourceKey
from stackoperator.models.v1.distribution import Distribution
from stackoperator.services.manifests.renderer import (
    ManifestRenderer,
    excluded_kinds,
)

from ...support.data import read_input_distribution

_INSTANCE = "app.kubernetes.io/instance"


def read_distribution(name: str) -> Distribution:
    return Distribution.model_validate(read_input_distribution(name))


def test_render_names() -> None:
    renderer = ManifestRenderer(MANIFESTS_PATH, "operators")
    resources = renderer.render(read_distribution("basic"))

    assert [str(r.key) for r in resources] == [
        "Deployment llama/basic",
        "Service llama/basic-service",
        "PersistentVolumeClaim llama/basic-pvc",
        "ServiceAccount llama/basic-sa",
        "ClusterRoleBinding llama-basic-scc-binding",
        "NetworkPolicy llama/basic-network-policy",
        "HorizontalPodAutoscaler llama/basic-hpa",
        "PodDisruptionBudget llama/basic-pdb",
        "Ingress llama/basic-ingress",
    ]
    for resource in resources:
        assert resource.labels["app.kubernetes.io/managed-by"] == (
            "llama-stack-operator"
        )
        assert resource.labels["app.kubernetes.io/part-of"] == "llama-stack"


def test_render_basic() -> None:
    renderer = ManifestRenderer(MANIFESTS_PATH)
    resources = renderer.render(read_distribution("basic"))

    deployment = resources.get(ResourceKey("Deployment", "llama", "basic"))
    assert deployment
    assert deployment.get("/spec/replicas") == 1
    assert deployment.get("/spec/selector/matchLabels") == {
        "app": "llama-stack",
        _INSTANCE: "basic",
    }
    template_labels = deployment.get("/spec/template/metadata/labels")
    assert template_labels[_INSTANCE] == "basic"
    assert template_labels["app.kubernetes.io/part-of"] == "llama-stack"
    service_account = deployment.get("/spec/template/spec/serviceAccountName")
    assert service_account == "basic-sa"

    service = resources.by_kind("Service")[0]
    assert service.get("/spec/selector") == {
        "app": "llama-stack",
        _INSTANCE: "basic",
    }
    assert service.get("/spec/ports/0/port") == 8321
    assert service.get("/spec/ports/0/targetPort") == 8321

    binding = resources.by_kind("ClusterRoleBinding")[0]
    assert binding.namespace is None
    assert binding.get("/subjects") == [
        {"kind": "ServiceAccount", "name": "basic-sa", "namespace": "llama"}
    ]
    assert binding.get("/roleRef/name") == "system:openshift:scc:anyuid"

    pvc = resources.by_kind("PersistentVolumeClaim")[0]
    assert pvc.get("/spec/resources/requests/storage") == "10Gi"

    pdb = resources.by_kind("PodDisruptionBudget")[0]
    assert pdb.get("/spec/minAvailable") == 1
    assert not pdb.has("/spec/maxUnavailable")


def test_render_storage_and_port() -> None:
    renderer = ManifestRenderer(MANIFESTS_PATH)
    resources = renderer.render(read_distribution("storage"))

    pvc = resources.by_kind("PersistentVolumeClaim")[0]
    assert pvc.name == "persistent-pvc"
    assert pvc.get("/spec/resources/requests/storage") == "20Gi"

    service = resources.by_kind("Service")[0]
    assert service.get("/spec/ports/0/port") == 8080
    assert service.get("/spec/ports/0/targetPort") == 8080

    ingress = resources.by_kind("Ingress")[0]
    backend = ingress.get("/spec/rules/0/http/paths/0/backend/service")
    assert backend == {"name": "persistent-service", "port": {"number": 8080}}


def test_render_no_port() -> None:
    obj = read_input_distribution("basic")
    obj["spec"]["server"]["containerSpec"] = {"port": 0}
    renderer = ManifestRenderer(MANIFESTS_PATH)
    resources = renderer.render(Distribution.model_validate(obj))

    # Without a port there is no Service, but the network policy must still
    # allow traffic to the port the server listens on.
    policy = resources.by_kind("NetworkPolicy")[0]
    assert policy.get("/spec/ingress/0/ports") == [
        {"protocol": "TCP", "port": 8321}
    ]


def test_render_scaled() -> None:
    renderer = ManifestRenderer(MANIFESTS_PATH)
    resources = renderer.render(read_distribution("scaled"))

    # The HorizontalPodAutoscaler owns the replica count.
    deployment = resources.by_kind("Deployment")[0]
    assert not deployment.has("/spec/replicas")

    hpa = resources.by_kind("HorizontalPodAutoscaler")[0]
    assert hpa.get("/spec/scaleTargetRef/name") == "scaled"
    assert hpa.get("/spec/minReplicas") == 3
    assert hpa.get("/spec/maxReplicas") == 6
    assert hpa.get("/spec/metrics") == [
        {
            "type": "Resource",
            "resource": {
                "name": "memory",
                "target": {"type": "Utilization", "averageUtilization": 70},
            },
        }
    ]

    pdb = resources.by_kind("PodDisruptionBudget")[0]
    assert pdb.get("/spec/maxUnavailable") == 1
    assert not pdb.has("/spec/minAvailable")
    selector = pdb.get("/spec/selector/matchLabels")
    assert selector[_INSTANCE] == "scaled"


def test_render_context() -> None:
    renderer = ManifestRenderer(MANIFESTS_PATH)
    context = ManifestContext(
        image="docker.io/llamastack/distribution-starter:latest",
        pod_spec={
            "containers": [{"name": "llama-stack", "ports": []}],
            "volumes": [{"name": "lls-storage", "emptyDir": {}}],
        },
        hashes={"configmap.hash/ca-bundle": "fedcba9876543210"},
    )
    resources = renderer.render(read_distribution("basic"), context)

    deployment = resources.by_kind("Deployment")[0]
    container = deployment.get("/spec/template/spec/containers/0")
    assert container["image"] == context.image
    volumes = deployment.get("/spec/template/spec/volumes")
    assert volumes == [{"name": "lls-storage", "emptyDir": {}}]
    annotations = deployment.get("/spec/template/metadata/annotations")
    assert annotations == {"configmap.hash/ca-bundle": "fedcba9876543210"}


def test_render_is_repeatable() -> None:
    renderer = ManifestRenderer(MANIFESTS_PATH)
    distribution = read_distribution("scaled")
    first = renderer.render(distribution)
    second = renderer.render(distribution)
    assert [r.to_dict() for r in first] == [r.to_dict() for r in second]


def test_default_directory(tmp_path: Path) -> None:
    shutil.copytree(MANIFESTS_PATH, tmp_path / "default")
    renderer = ManifestRenderer(tmp_path)
    resources = renderer.render(read_distribution("basic"))
    assert len(resources) == 9

    renderer = ManifestRenderer(tmp_path / "default" / "missing")
    with pytest.raises(ManifestError, match="No kustomization"):
        renderer.render(read_distribution("basic"))


def test_excluded_kinds() -> None:
    operator_config = OperatorConfig()
    basic = read_distribution("basic")
    assert excluded_kinds(basic, operator_config) == {
        "HorizontalPodAutoscaler",
        "Ingress",
        "NetworkPolicy",
        "PersistentVolumeClaim",
        "PodDisruptionBudget",
    }

    flags = FeatureFlags(enable_network_policy=FeatureFlag(enabled=True))
    operator_config = OperatorConfig(feature_flags=flags)
    scaled = read_distribution("scaled")
    assert excluded_kinds(scaled, operator_config) == {
        "PersistentVolumeClaim"
    }

    # A port of 0 disables the Service and therefore the Ingress.
    obj = read_input_distribution("storage")
    obj["spec"]["server"]["containerSpec"]["port"] = 0
    obj["spec"]["network"] = {"exposeRoute": True}
    no_ports = Distribution.model_validate(obj)
    excluded = excluded_kinds(no_ports, operator_config)
    assert excluded == {
        "HorizontalPodAutoscaler",
        "Ingress",
        "PodDisruptionBudget",
        "Service",
    }
