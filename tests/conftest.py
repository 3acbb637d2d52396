"""Test fixtures for stack-operator tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio
import respx
import structlog
from asgi_lifespan import LifespanManager
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from safir.testing.slack import MockSlackWebhook, mock_slack_webhook
from structlog.stdlib import BoundLogger

from stackoperator.config import Config
from stackoperator.factory import Factory
from stackoperator.main import create_app

from .support.config import configure
from .support.constants import TEST_BASE_URL
from .support.kubernetes import (
    MockCluster,
    MockWatchStorage,
    patch_kubernetes,
    patch_watches,
)


@pytest_asyncio.fixture
async def config() -> Config:
    """Construct default configuration for tests."""
    return await configure("standard")


@pytest_asyncio.fixture
async def app(
    config: Config,
    mock_kubernetes: MockCluster,
    mock_watches: MockWatchStorage,
    mock_slack: MockSlackWebhook,
) -> AsyncIterator[FastAPI]:
    """Return a configured test application.

    Wraps the application in a lifespan manager so that startup and shutdown
    events are sent during test execution.
    """
    app = create_app()
    async with LifespanManager(app):
        yield app


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    """Return an ``httpx.AsyncClient`` configured to talk to the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport, base_url=TEST_BASE_URL
    ) as client:
        yield client


@pytest_asyncio.fixture
async def factory(
    config: Config,
    mock_kubernetes: MockCluster,
    mock_watches: MockWatchStorage,
    mock_slack: MockSlackWebhook,
) -> AsyncIterator[Factory]:
    """Create a component factory for tests."""
    async with Factory.standalone(config) as factory:
        yield factory


@pytest.fixture
def logger() -> BoundLogger:
    """Logger for components constructed directly by tests."""
    return structlog.get_logger("stackoperator")


@pytest.fixture
def mock_kubernetes() -> Iterator[MockCluster]:
    yield from patch_kubernetes()


@pytest.fixture
def mock_slack(
    config: Config, respx_mock: respx.Router
) -> Iterator[MockSlackWebhook]:
    config.slack_webhook = SecretStr("https://slack.example.com/webhook")
    yield mock_slack_webhook(
        config.slack_webhook.get_secret_value(), respx_mock
    )
    config.slack_webhook = None


@pytest.fixture
def mock_watches() -> Iterator[MockWatchStorage]:
    yield from patch_watches()
