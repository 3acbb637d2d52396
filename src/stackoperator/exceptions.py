"""Exceptions for the Distribution operator."""

from __future__ import annotations

from typing import Self, override

from kubernetes_asyncio.client import ApiException
from kubernetes_asyncio.dynamic.exceptions import DynamicApiError
from pydantic import ValidationError
from safir.slack.blockkit import (
    SlackCodeBlock,
    SlackException,
    SlackMessage,
    SlackTextBlock,
    SlackTextField,
    SlackWebException,
)
from safir.slack.sentry import SentryEventInfo

__all__ = [
    "HealthProbeParseError",
    "HealthProbeWebError",
    "InvalidCABundleError",
    "InvalidConfigMapKeyError",
    "InvalidDistributionError",
    "KubernetesError",
    "ManifestError",
    "MissingConfigMapError",
    "MissingConfigMapKeyError",
    "OperatorConfigError",
    "ReconcileError",
    "ReconcileStepError",
    "ScopeResolutionError",
    "ServiceMutationError",
    "UnknownDistributionError",
]


class ReconcileError(SlackException):
    """Base class for errors that abort a reconcile of a Distribution.

    These errors are reported in the status of the Distribution and cause the
    reconcile to be retried with backoff.

    Parameters
    ----------
    message
        Human-readable error message, shown in the Distribution status.
    namespace
        Namespace of the Distribution, if known.
    name
        Name of the Distribution, if known.
    """

    def __init__(
        self,
        message: str,
        *,
        namespace: str | None = None,
        name: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.namespace = namespace
        self.name = name

    @override
    def to_slack(self) -> SlackMessage:
        """Convert to a Slack message for Slack alerting.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting as an alert.
        """
        message = super().to_slack()
        if self.name:
            obj = f"{self.namespace}/{self.name}"
            message.fields.append(SlackTextField(heading="Object", text=obj))
        return message

    @override
    def to_sentry(self) -> SentryEventInfo:
        """Return a collection of Sentry event metadata about the exception.

        Returns
        -------
        safir.slack.sentry.SentryEventInfo
            Sentry event metadata for use with \
            `~safir.sentry.before_send_handler`
        """
        info = super().to_sentry()
        if self.namespace:
            info.tags["namespace"] = self.namespace
        if self.name:
            info.tags["name"] = self.name
        return info


class InvalidDistributionError(ReconcileError):
    """The Distribution does not name a catalog entry or an image."""


class UnknownDistributionError(ReconcileError):
    """The Distribution names a catalog entry that does not exist.

    Parameters
    ----------
    distribution
        Catalog name requested by the Distribution.
    """

    def __init__(
        self,
        distribution: str,
        *,
        namespace: str | None = None,
        name: str | None = None,
    ) -> None:
        msg = f"Unknown distribution {distribution}, not in catalog"
        super().__init__(msg, namespace=namespace, name=name)
        self.distribution = distribution


class MissingConfigMapError(ReconcileError):
    """A ConfigMap referenced by the Distribution does not exist."""


class MissingConfigMapKeyError(ReconcileError):
    """A key referenced by the Distribution is missing from a ConfigMap."""


class InvalidConfigMapKeyError(ReconcileError):
    """A ConfigMap key named by the Distribution is not acceptable."""


class InvalidCABundleError(ReconcileError):
    """A CA bundle key does not contain parseable X.509 certificates."""


class ScopeResolutionError(ReconcileError):
    """Unable to determine whether a kind is namespaced or cluster-scoped.

    Parameters
    ----------
    api_version
        API version of the object.
    kind
        Kind of the object.
    """

    def __init__(self, api_version: str, kind: str) -> None:
        msg = f"Unable to resolve scope of {kind} ({api_version})"
        super().__init__(msg)
        self.api_version = api_version
        self.kind = kind


class ServiceMutationError(ReconcileError):
    """A managed Service was changed in a way a patch would silently undo."""


class ManifestError(ReconcileError):
    """Rendering the manifest templates failed."""


class ReconcileStepError(ReconcileError):
    """Wraps an error from one step of the reconcile with the step name.

    Parameters
    ----------
    step
        Description of the reconcile step that failed.
    error
        Underlying exception.
    """

    def __init__(
        self,
        step: str,
        error: Exception,
        *,
        namespace: str | None = None,
        name: str | None = None,
    ) -> None:
        msg = f"Failed to {step}: {error!s}"
        super().__init__(msg, namespace=namespace, name=name)
        self.step = step
        self.error = error

    @override
    def to_slack(self) -> SlackMessage:
        """Convert to a Slack message for Slack alerting.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting as an alert.
        """
        if isinstance(self.error, SlackException):
            message = self.error.to_slack()
            message.message = f"Failed to {self.step}: {message.message}"
            return message
        message = super().to_slack()
        error = f"{type(self.error).__name__}: {self.error!s}"
        message.blocks.append(SlackCodeBlock(heading="Error", code=error))
        return message


class OperatorConfigError(SlackException):
    """The operator-level ConfigMap could not be parsed."""


class HealthProbeWebError(SlackWebException):
    """A request to the health endpoints of the server failed."""


class HealthProbeParseError(SlackException):
    """Unable to parse the reply from the server health endpoints.

    Parameters
    ----------
    message
        Summary error message.
    error
        Detailed error message, possibly multi-line.
    """

    @classmethod
    def from_exception(cls, exc: ValidationError) -> Self:
        """Create an exception from a Pydantic parse failure.

        Parameters
        ----------
        exc
            Pydantic exception.

        Returns
        -------
        HealthProbeParseError
            Constructed exception.
        """
        error = f"{type(exc).__name__}: {exc!s}"
        return cls("Unable to parse reply from server", error)

    def __init__(self, message: str, error: str) -> None:
        super().__init__(message)
        self.error = error

    @override
    def to_slack(self) -> SlackMessage:
        """Convert to a Slack message for Slack alerting.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting as an alert.
        """
        message = super().to_slack()
        block = SlackCodeBlock(heading="Error", code=self.error)
        message.blocks.append(block)
        return message


class KubernetesError(SlackException):
    """An API call to Kubernetes failed.

    Parameters
    ----------
    message
        Summary of error.
    namespace
        Namespace of object being acted on.
    name
        Name of object being acted on.
    kind
        Kind of object being acted on.
    status
        Status code of failure, if any.
    body
        Body of failure message, if any.
    """

    @classmethod
    def from_exception(
        cls,
        message: str,
        exc: ApiException | DynamicApiError,
        *,
        kind: str | None = None,
        namespace: str | None = None,
        name: str | None = None,
    ) -> Self:
        """Create an exception from a Kubernetes API exception.

        Parameters
        ----------
        message
            Brief explanation of what was being attempted.
        exc
            Kubernetes API exception, either from the regular or the dynamic
            client.
        kind
            Kind of object being acted on.
        namespace
            Namespace of object being acted on.
        name
            Name of object being acted on.

        Returns
        -------
        KubernetesError
            Newly-created exception.
        """
        body = exc.body if exc.body else exc.reason
        if isinstance(body, bytes):
            body = body.decode(errors="replace")
        return cls(
            message,
            kind=kind,
            namespace=namespace,
            name=name,
            status=exc.status,
            body=body,
        )

    def __init__(
        self,
        message: str,
        *,
        kind: str | None = None,
        namespace: str | None = None,
        name: str | None = None,
        status: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.status = status
        self.body = body

    @override
    def __str__(self) -> str:
        result = self._summary()
        if self.body:
            result += f": {self.body}"
        return result

    @override
    def to_slack(self) -> SlackMessage:
        """Convert to a Slack message for Slack alerting.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting as an alert.
        """
        message = super().to_slack()
        message.message = self._summary()
        if self.body:
            block = SlackCodeBlock(heading="Error", code=self.body)
            message.blocks.append(block)
        if self.kind:
            obj = self.kind
            if self.namespace:
                obj += f" {self.namespace}/{self.name}"
            elif self.name:
                obj += f" {self.name}"
            message.blocks.append(SlackTextBlock(heading="Object", text=obj))
        return message

    @override
    def to_sentry(self) -> SentryEventInfo:
        """Return a collection of Sentry event metadata about the exception.

        Returns
        -------
        safir.slack.sentry.SentryEventInfo
            Sentry event metadata for use with \
            `~safir.sentry.before_send_handler`
        """
        info = super().to_sentry()
        if self.kind:
            info.tags["kind"] = self.kind
        if self.namespace:
            info.tags["namespace"] = self.namespace
        if self.name:
            info.tags["name"] = self.name
        if self.status:
            info.tags["status"] = str(self.status)
        if self.body:
            info.attachments["body"] = self.body
        return info

    def _summary(self) -> str:
        """Summarize the exception.

        Produces a short summary suitable for the Slack message or for use as
        the first part of the string representation.
        """
        result = f"{self.message} ({self.status})" if self.status else ""
        if not result:
            result = self.message
        if self.kind:
            if self.namespace:
                result += f" for {self.kind} {self.namespace}/{self.name}"
            elif self.name:
                result += f" for {self.kind} {self.name}"
        return result
