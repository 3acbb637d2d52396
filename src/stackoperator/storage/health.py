"""Client for the introspection endpoints of a running server."""

from __future__ import annotations

from datetime import timedelta
from json import JSONDecodeError

from httpx import AsyncClient, HTTPError
from pydantic import ValidationError
from structlog.stdlib import BoundLogger

from ..exceptions import HealthProbeParseError, HealthProbeWebError
from ..models.domain.health import ProvidersReply, VersionReply
from ..models.v1.distribution import Distribution, ProviderInfo

__all__ = ["HealthProbeClient", "server_url"]


def server_url(distribution: Distribution) -> str:
    """Build the cluster-internal base URL of the server.

    Parameters
    ----------
    distribution
        Distribution whose server should be contacted.

    Returns
    -------
    str
        URL using the DNS name of the Service, without a trailing slash.
    """
    service = distribution.service_name
    namespace = distribution.namespace
    port = distribution.container_port
    return f"http://{service}.{namespace}.svc.cluster.local:{port}"


class HealthProbeClient:
    """Query a running server for its providers and version.

    Parameters
    ----------
    http_client
        Shared HTTP client.
    timeout
        Timeout for each request.
    logger
        Logger for messages.
    """

    def __init__(
        self,
        http_client: AsyncClient,
        timeout: timedelta,
        logger: BoundLogger,
    ) -> None:
        self._http_client = http_client
        self._timeout = timeout.total_seconds()
        self._logger = logger

    async def get_providers(
        self, distribution: Distribution
    ) -> list[ProviderInfo]:
        """Get the providers configured in the server.

        Parameters
        ----------
        distribution
            Distribution whose server should be queried.

        Returns
        -------
        list of ProviderInfo
            Providers reported by the server.

        Raises
        ------
        HealthProbeParseError
            Raised if the reply could not be parsed.
        HealthProbeWebError
            Raised if the request failed or timed out.
        """
        url = server_url(distribution) + "/v1/providers"
        try:
            r = await self._http_client.get(url, timeout=self._timeout)
            r.raise_for_status()
            reply = ProvidersReply.model_validate(r.json())
        except HTTPError as e:
            raise HealthProbeWebError.from_exception(e) from e
        except JSONDecodeError as e:
            msg = "Reply from server is not JSON"
            raise HealthProbeParseError(msg, str(e)) from e
        except ValidationError as e:
            raise HealthProbeParseError.from_exception(e) from e
        self._logger.debug(
            "Retrieved providers", url=url, count=len(reply.data)
        )
        return reply.data

    async def get_version(self, distribution: Distribution) -> str:
        """Get the version of the server.

        Parameters
        ----------
        distribution
            Distribution whose server should be queried.

        Returns
        -------
        str
            Version reported by the server.

        Raises
        ------
        HealthProbeParseError
            Raised if the reply could not be parsed.
        HealthProbeWebError
            Raised if the request failed or timed out.
        """
        url = server_url(distribution) + "/v1/version"
        try:
            r = await self._http_client.get(url, timeout=self._timeout)
            r.raise_for_status()
            reply = VersionReply.model_validate(r.json())
        except HTTPError as e:
            raise HealthProbeWebError.from_exception(e) from e
        except JSONDecodeError as e:
            msg = "Reply from server is not JSON"
            raise HealthProbeParseError(msg, str(e)) from e
        except ValidationError as e:
            raise HealthProbeParseError.from_exception(e) from e
        return reply.version
