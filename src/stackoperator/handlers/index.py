"""Metadata routes of the Distribution operator.

The internal route at ``/`` doubles as the Kubernetes liveness check. The
external route is served under the configured path prefix.
"""

from fastapi import APIRouter, Depends
from safir.metadata import Metadata, get_metadata
from safir.slack.webhook import SlackRouteErrorHandler

from ..config import Config
from ..dependencies.config import config_dependency
from ..models.index import Index

internal_router = APIRouter(route_class=SlackRouteErrorHandler)
"""Router for routes reachable only from inside the cluster."""

external_router = APIRouter(route_class=SlackRouteErrorHandler)
"""Router for routes mounted under the operator path prefix."""

__all__ = ["external_router", "internal_router"]


@external_router.get(
    "/",
    response_model=Index,
    response_model_exclude_none=True,
    summary="Operator metadata",
)
async def get_index(
    config: Config = Depends(config_dependency),
) -> Index:
    metadata = get_metadata(
        package_name="stack-operator", application_name=config.name
    )
    return Index(metadata=metadata)


@internal_router.get(
    "/",
    description=(
        "Return the version and metadata of the running operator. Used as the"
        " liveness check of the operator pod, and not reachable from outside"
        " the cluster."
    ),
    include_in_schema=False,
    response_model=Metadata,
    response_model_exclude_none=True,
    summary="Operator metadata (internal)",
)
async def get_internal_index(
    config: Config = Depends(config_dependency),
) -> Metadata:
    return get_metadata(
        package_name="stack-operator", application_name=config.name
    )
