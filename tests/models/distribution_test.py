"""Tests for the Distribution custom resource model."""

import pytest
from pydantic import ValidationError

from stackoperator.models.domain.kubernetes import ObjectKey
from stackoperator.models.v1.distribution import (
    CABundleConfig,
    Distribution,
    DistributionStatus,
)

from ..support.data import read_input_distribution


def read_distribution(name: str) -> Distribution:
    return Distribution.model_validate(read_input_distribution(name))


def test_names() -> None:
    distribution = read_distribution("basic")
    assert distribution.key == ObjectKey("llama", "basic")
    assert distribution.service_name == "basic-service"
    assert distribution.service_account_name == "basic-sa"
    assert distribution.cluster_role_binding_name == "llama-basic-scc-binding"
    assert distribution.container_port == 8321
    assert distribution.has_ports
    assert not distribution.autoscaling_enabled
    assert distribution.user_config_map is None
    assert distribution.ca_bundle_config_map is None

    obj = read_input_distribution("basic")
    obj["spec"]["server"]["podOverrides"] = {"serviceAccountName": "custom"}
    obj["spec"]["server"]["containerSpec"] = {"port": 0}
    distribution = Distribution.model_validate(obj)
    assert distribution.service_account_name == "custom"
    assert not distribution.has_ports

    assert read_distribution("scaled").autoscaling_enabled


def test_config_maps() -> None:
    distribution = read_distribution("user-config")
    assert distribution.user_config_map == ObjectKey("llama", "cfg")
    assert distribution.user_config_volume == "cfg"

    distribution = read_distribution("inline-config")
    assert distribution.user_config_map == ObjectKey(
        "llama", "inline-user-config"
    )
    assert distribution.user_config_volume == "inline-user-config"

    obj = read_input_distribution("user-config")
    obj["spec"]["server"]["userConfig"]["configMapNamespace"] = "shared"
    distribution = Distribution.model_validate(obj)
    assert distribution.user_config_map == ObjectKey("shared", "cfg")
    assert distribution.user_config_volume == "configured-user-config"

    distribution = read_distribution("ca-bundle")
    assert distribution.ca_bundle_config_map == ObjectKey("certs", "custom-ca")
    assert distribution.managed_ca_bundle_name == "trusting-ca-bundle"
    assert CABundleConfig(config_map_name="ca").keys == ["ca-bundle.crt"]


def test_owner_reference() -> None:
    obj = read_input_distribution("basic")
    obj["metadata"]["uid"] = "0b5c6f0e-4b8e-4ce6-8c1e-2f7c1b0a9d3e"
    distribution = Distribution.model_validate(obj)
    assert distribution.to_owner_reference() == {
        "apiVersion": "llamastack.io/v1alpha1",
        "kind": "LlamaStackDistribution",
        "name": "basic",
        "uid": "0b5c6f0e-4b8e-4ce6-8c1e-2f7c1b0a9d3e",
        "controller": True,
        "blockOwnerDeletion": True,
    }


def test_validation() -> None:
    obj = read_input_distribution("basic")
    obj["spec"]["server"]["distribution"]["image"] = "quay.io/example/x:1"
    with pytest.raises(ValidationError):
        Distribution.model_validate(obj)

    obj = read_input_distribution("inline-config")
    obj["spec"]["server"]["userConfig"]["configMapName"] = "cfg"
    with pytest.raises(ValidationError):
        Distribution.model_validate(obj)

    obj = read_input_distribution("scaled")
    obj["spec"]["server"]["autoscaling"]["maxReplicas"] = 0
    with pytest.raises(ValidationError):
        Distribution.model_validate(obj)

    # Unknown fields from newer versions of the resource are ignored.
    obj = read_input_distribution("basic")
    obj["spec"]["server"]["futureSetting"] = True
    assert Distribution.model_validate(obj).spec.replicas == 1


def test_status_serialization() -> None:
    status = DistributionStatus()
    serialized = status.to_kubernetes()
    assert serialized["phase"] == "Pending"
    assert serialized["serviceURL"] is None
    assert serialized["routeURL"] is None
    assert serialized["availableReplicas"] == 0
    assert serialized["conditions"] == []
    assert DistributionStatus.model_validate(serialized) == status
