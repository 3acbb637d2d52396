"""Tests for the storage layer for Distributions."""

from datetime import timedelta

import pytest
from structlog.stdlib import BoundLogger

from stackoperator.constants import DISTRIBUTION_KIND
from stackoperator.exceptions import InvalidDistributionError
from stackoperator.models.domain.kubernetes import ObjectKey
from stackoperator.models.v1.distribution import (
    DistributionPhase,
    DistributionStatus,
)
from stackoperator.storage.kubernetes.distribution import DistributionStorage
from stackoperator.timeout import Timeout

from ..support.data import read_input_distribution
from ..support.kubernetes import MockCluster


@pytest.mark.asyncio
async def test_read(mock_kubernetes: MockCluster, logger: BoundLogger) -> None:
    storage = DistributionStorage(mock_kubernetes, logger)
    timeout = Timeout(timedelta(seconds=30))
    key = ObjectKey("llama", "persistent")
    assert await storage.read(key, timeout) is None

    stored = mock_kubernetes.add_for_test(read_input_distribution("storage"))
    distribution = await storage.read(key, timeout)
    assert distribution
    assert distribution.key == key
    assert distribution.metadata.uid == stored["metadata"]["uid"]
    assert distribution.container_port == 8080
    assert distribution.spec.server.storage
    assert distribution.spec.server.storage.size == "20Gi"
    assert distribution.status is None

    obj = read_input_distribution("basic")
    obj["spec"]["replicas"] = -1
    mock_kubernetes.add_for_test(obj)
    with pytest.raises(InvalidDistributionError) as excinfo:
        await storage.read(ObjectKey("llama", "basic"), timeout)
    assert excinfo.value.namespace == "llama"
    assert excinfo.value.name == "basic"
    assert excinfo.value.message.startswith(f"Invalid {DISTRIBUTION_KIND}")


@pytest.mark.asyncio
async def test_list(mock_kubernetes: MockCluster, logger: BoundLogger) -> None:
    storage = DistributionStorage(mock_kubernetes, logger)
    timeout = Timeout(timedelta(seconds=30))
    mock_kubernetes.add_for_test(read_input_distribution("basic"))
    obj = read_input_distribution("storage")
    obj["metadata"]["namespace"] = "other"
    obj["spec"] = "invalid"
    mock_kubernetes.add_for_test(obj)

    # Listing does not parse, so invalid objects are still returned.
    objs = await storage.list(None, timeout)
    assert sorted(o["metadata"]["name"] for o in objs) == [
        "basic",
        "persistent",
    ]
    objs = await storage.list("other", timeout)
    assert [o["metadata"]["name"] for o in objs] == ["persistent"]


@pytest.mark.asyncio
async def test_update_status(
    mock_kubernetes: MockCluster, logger: BoundLogger
) -> None:
    storage = DistributionStorage(mock_kubernetes, logger)
    timeout = Timeout(timedelta(seconds=30))
    key = ObjectKey("llama", "basic")
    mock_kubernetes.add_for_test(read_input_distribution("basic"))

    status = DistributionStatus(
        phase=DistributionPhase.READY,
        available_replicas=1,
        service_url="http://basic-service.llama.svc.cluster.local:8321",
    )
    await storage.update_status(key, status, timeout)
    distribution = await storage.read(key, timeout)
    assert distribution
    assert distribution.status == status

    # Clearing the Service URL removes it from the stored status.
    status.service_url = None
    await storage.update_status(key, status, timeout)
    obj = mock_kubernetes.get_for_test(DISTRIBUTION_KIND, "llama", "basic")
    assert obj
    assert "serviceURL" not in obj["status"]
    assert mock_kubernetes.status_updates == {
        (DISTRIBUTION_KIND, "llama", "basic"): 2
    }
