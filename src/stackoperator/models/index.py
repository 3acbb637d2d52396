"""Top-level request models for the Distribution operator."""

from __future__ import annotations

from pydantic import BaseModel, Field
from safir.metadata import Metadata

__all__ = ["Index", "QueueState"]


class Index(BaseModel):
    """Metadata returned by the external root URL of the application."""

    metadata: Metadata = Field(..., title="Package metadata")


class QueueState(BaseModel):
    """State of the reconcile work queue.

    Keys are Distributions in :samp:`{namespace}/{name}` form.
    """

    queued: list[str] = Field(
        [],
        title="Queued",
        description="Distributions waiting for a worker, in queue order",
    )

    processing: list[str] = Field(
        [],
        title="Processing",
        description="Distributions currently being reconciled",
    )

    delayed: list[str] = Field(
        [],
        title="Delayed",
        description=(
            "Distributions that will be queued once a retry or polling"
            " delay has passed"
        ),
    )

    failing: dict[str, int] = Field(
        {},
        title="Failing",
        description=(
            "Number of consecutive failed reconciles of each Distribution"
            " whose last reconcile failed"
        ),
    )
