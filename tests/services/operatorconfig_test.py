"""Tests for loading the operator ConfigMap."""

from datetime import timedelta

import pytest
from structlog.stdlib import BoundLogger

from stackoperator.constants import (
    FEATURE_FLAGS_KEY,
    IMAGE_OVERRIDES_KEY,
    MANAGED_BY_LABEL,
)
from stackoperator.exceptions import OperatorConfigError
from stackoperator.models.domain.operatorconfig import (
    OperatorConfig,
    is_valid_image_reference,
)
from stackoperator.services.operatorconfig import (
    DEFAULT_FEATURE_FLAGS,
    OperatorConfigService,
    parse_feature_flags,
    parse_image_overrides,
    parse_operator_config,
)
from stackoperator.timeout import Timeout

from ..support.kubernetes import MockCluster


def test_feature_flags() -> None:
    for raw in (None, "  \n", "# nothing\n", DEFAULT_FEATURE_FLAGS):
        assert not parse_feature_flags(raw).enable_network_policy.enabled

    flags = parse_feature_flags(
        "enableNetworkPolicy:\n  enabled: true\nsomethingElse: 1\n"
    )
    assert flags.enable_network_policy.enabled

    with pytest.raises(OperatorConfigError):
        parse_feature_flags("enableNetworkPolicy: [")
    with pytest.raises(OperatorConfigError):
        parse_feature_flags("enableNetworkPolicy:\n  enabled: sometimes\n")
    with pytest.raises(OperatorConfigError):
        parse_feature_flags("- enableNetworkPolicy\n")


def test_image_references() -> None:
    valid = [
        "nginx",
        "docker.io/llamastack/distribution-starter:latest",
        "quay.io/example/custom-stack:1.0",
        "localhost:5000/stack",
        "registry.example.com/org/image@sha256:" + "a" * 64,
    ]
    for reference in valid:
        assert is_valid_image_reference(reference), reference
    invalid = ["", "Quay.io/UPPER/Image", "image:", "a b", "x" * 4097]
    for reference in invalid:
        assert not is_valid_image_reference(reference), reference


def test_image_overrides(logger: BoundLogger) -> None:
    assert parse_image_overrides(None, logger) == {}
    assert parse_image_overrides("{unclosed", logger) == {}
    assert parse_image_overrides("- starter\n", logger) == {}

    raw = (
        "starter: quay.io/example/starter:2.0\n"
        "broken: 'not an image'\n"
        "numeric: 3\n"
    )
    assert parse_image_overrides(raw, logger) == {
        "starter": "quay.io/example/starter:2.0"
    }


def test_operator_config(logger: BoundLogger) -> None:
    config = parse_operator_config({}, logger)
    assert config == OperatorConfig()
    assert not config.enable_network_policy

    config = parse_operator_config(
        {
            FEATURE_FLAGS_KEY: "enableNetworkPolicy:\n  enabled: true\n",
            IMAGE_OVERRIDES_KEY: "starter: quay.io/example/starter:2.0\n",
        },
        logger,
    )
    assert config.enable_network_policy
    assert config.image_overrides == {
        "starter": "quay.io/example/starter:2.0"
    }

    # The settings cannot be changed once built.
    with pytest.raises(TypeError):
        config.image_overrides["starter"] = "x"  # type: ignore[index]


@pytest.mark.asyncio
async def test_load(
    mock_kubernetes: MockCluster, logger: BoundLogger
) -> None:
    service = OperatorConfigService(
        mock_kubernetes, "stack-system", "stack-config", logger
    )
    timeout = Timeout(timedelta(seconds=30))
    assert service.is_operator_config("stack-system", "stack-config")
    assert not service.is_operator_config("llama", "stack-config")

    # The ConfigMap is created with defaults if missing.
    config = await service.load(timeout)
    assert config == OperatorConfig()
    assert mock_kubernetes.mutations == [
        ("create", ("ConfigMap", "stack-system", "stack-config"))
    ]
    config_map = mock_kubernetes.get_for_test(
        "ConfigMap", "stack-system", "stack-config"
    )
    assert config_map
    assert config_map["data"] == {FEATURE_FLAGS_KEY: DEFAULT_FEATURE_FLAGS}
    labels = config_map["metadata"]["labels"]
    assert labels[MANAGED_BY_LABEL] == "llama-stack-operator"

    # An existing ConfigMap is read and never rewritten.
    mock_kubernetes.patch_for_test(
        "ConfigMap",
        "stack-system",
        "stack-config",
        {"data": {FEATURE_FLAGS_KEY: "enableNetworkPolicy: {enabled: true}"}},
    )
    mock_kubernetes.reset_mutations_for_test()
    config = await service.load(timeout)
    assert config.enable_network_policy
    assert mock_kubernetes.mutations == []

    mock_kubernetes.patch_for_test(
        "ConfigMap",
        "stack-system",
        "stack-config",
        {"data": {FEATURE_FLAGS_KEY: "enableNetworkPolicy: ["}},
    )
    with pytest.raises(OperatorConfigError):
        await service.load(timeout)
