"""Models for replies from the server introspection endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from ..v1.distribution import ProviderInfo

__all__ = [
    "ProvidersReply",
    "VersionReply",
]


class ProvidersReply(BaseModel):
    """Reply from the ``/v1/providers`` route of the server."""

    model_config = ConfigDict(extra="ignore")

    data: list[ProviderInfo] = Field(..., title="Configured providers")


class VersionReply(BaseModel):
    """Reply from the ``/v1/version`` route of the server."""

    model_config = ConfigDict(extra="ignore")

    version: str = Field(..., title="Server version", examples=["0.2.22"])
