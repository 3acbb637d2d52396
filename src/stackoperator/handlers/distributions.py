"""Routes reporting the reconcile state of Distributions."""

from typing import Annotated

from fastapi import APIRouter, Depends
from safir.slack.webhook import SlackRouteErrorHandler

from ..dependencies.context import RequestContext, context_dependency
from ..models.index import QueueState

router = APIRouter(route_class=SlackRouteErrorHandler)
"""Router to mount into the application."""

__all__ = ["router"]


@router.get(
    "/distributions",
    response_model=QueueState,
    summary="Reconcile queue",
    description=(
        "Return the Distributions that are waiting to be reconciled, being"
        " reconciled, waiting for a retry, or failing"
    ),
)
async def get_distributions(
    context: Annotated[RequestContext, Depends(context_dependency)],
) -> QueueState:
    return context.queue.snapshot()
