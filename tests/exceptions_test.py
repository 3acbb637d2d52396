"""Tests for exceptions."""

from safir.slack.blockkit import SlackCodeBlock, SlackTextField

from stackoperator.exceptions import (
    KubernetesError,
    ReconcileStepError,
    UnknownDistributionError,
)


def test_kubernetes_error() -> None:
    error = KubernetesError(
        "Error creating object",
        kind="Deployment",
        namespace="llama",
        name="basic",
        status=422,
        body="Invalid value",
    )
    expected = "Error creating object (422) for Deployment llama/basic"
    assert str(error) == f"{expected}: Invalid value"

    message = error.to_slack()
    assert message.message == expected
    block = SlackCodeBlock(heading="Error", code="Invalid value")
    assert block in message.blocks

    sentry = error.to_sentry()
    assert sentry.tags["kind"] == "Deployment"
    assert sentry.tags["namespace"] == "llama"
    assert sentry.tags["name"] == "basic"
    assert sentry.tags["status"] == "422"
    assert sentry.attachments["body"] == "Invalid value"

    error = KubernetesError("Error deleting object", kind="ClusterRoleBinding")
    assert str(error) == "Error deleting object"
    error = KubernetesError(
        "Error deleting object", kind="ClusterRoleBinding", name="binding"
    )
    assert str(error) == "Error deleting object for ClusterRoleBinding binding"


def test_reconcile_error() -> None:
    error = UnknownDistributionError("missing", namespace="llama", name="x")
    assert str(error) == "Unknown distribution missing, not in catalog"
    assert error.message == str(error)
    assert error.distribution == "missing"

    message = error.to_slack()
    assert message.message == "Unknown distribution missing, not in catalog"
    assert SlackTextField(heading="Object", text="llama/x") in message.fields

    sentry = error.to_sentry()
    assert sentry.tags["namespace"] == "llama"
    assert sentry.tags["name"] == "x"


def test_reconcile_step_error() -> None:
    cause = KubernetesError(
        "Error applying object", kind="Service", status=500, body="Oops"
    )
    error = ReconcileStepError(
        "apply manifests", cause, namespace="llama", name="basic"
    )
    assert str(error) == (
        "Failed to apply manifests: Error applying object (500): Oops"
    )

    # Slack-aware causes provide the details of the message.
    message = error.to_slack()
    assert message.message == (
        "Failed to apply manifests: Error applying object (500)"
    )
    assert SlackCodeBlock(heading="Error", code="Oops") in message.blocks

    # Other causes are added as a code block.
    error = ReconcileStepError(
        "update status", ValueError("bad"), namespace="llama", name="basic"
    )
    message = error.to_slack()
    assert message.message == "Failed to update status: bad"
    block = SlackCodeBlock(heading="Error", code="ValueError: bad")
    assert block in message.blocks
    field = SlackTextField(heading="Object", text="llama/basic")
    assert field in message.fields
