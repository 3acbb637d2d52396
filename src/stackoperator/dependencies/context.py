"""Request context management.

`ContextDependency` is an all-in-one dependency that captures the context of
any request. It requires that a `~stackoperator.config.Config` object has
been loaded before it can be instantiated.
"""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request
from safir.dependencies.logger import logger_dependency
from structlog.stdlib import BoundLogger

from ..config import Config
from ..factory import Factory, ProcessContext
from ..services.workqueue import WorkQueue

__all__ = [
    "ContextDependency",
    "RequestContext",
    "context_dependency",
]


@dataclass(slots=True)
class RequestContext:
    """Holds the incoming request and its surrounding context.

    This object is provided to every route handler via a dependency and
    contains the factory to create service objects, any global singletons
    that route handlers need to use, and other per-request information that
    is needed by route handlers.
    """

    request: Request
    """Incoming request."""

    logger: BoundLogger
    """Request logger, rebound with discovered context."""

    factory: Factory
    """Component factory."""

    queue: WorkQueue
    """Work queue of Distributions to reconcile."""


class ContextDependency:
    """Provide a per-request context as a FastAPI dependency.

    Each request gets its own `RequestContext`. The portions of the context
    shared across all requests are collected into the single process-global
    `~stackoperator.factory.ProcessContext` and reused with each request.
    """

    def __init__(self) -> None:
        self._process_context: ProcessContext | None = None

    async def __call__(
        self,
        request: Request,
        logger: Annotated[BoundLogger, Depends(logger_dependency)],
    ) -> RequestContext:
        """Create a per-request context and return it."""
        if not self._process_context:
            raise RuntimeError("ContextDependency not initialized")
        return RequestContext(
            request=request,
            logger=logger,
            factory=Factory(self._process_context, logger),
            queue=self._process_context.queue,
        )

    @property
    def is_initialized(self) -> bool:
        """Whether the process context has been initialized."""
        return self._process_context is not None

    async def initialize(self, config: Config) -> None:
        """Initialize the process-global shared context.

        Parameters
        ----------
        config
            Operator configuration.
        """
        if self._process_context:
            await self._process_context.stop()
        self._process_context = await ProcessContext.from_config(config)
        await self._process_context.start()

    async def aclose(self) -> None:
        """Clean up the per-process configuration."""
        if self._process_context:
            await self._process_context.stop()
            await self._process_context.aclose()
        self._process_context = None


context_dependency: ContextDependency = ContextDependency()
"""The dependency that will return the per-request context."""
