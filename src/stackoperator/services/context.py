"""Resolution of the run-time inputs for rendering a Distribution."""

from __future__ import annotations

from collections.abc import Mapping

from ..exceptions import InvalidDistributionError, UnknownDistributionError
from ..models.domain.manifests import ManifestContext
from ..models.domain.operatorconfig import OperatorConfig
from ..models.v1.distribution import Distribution
from .configmaps import ObservedConfig
from .podspec import PodSpecBuilder

__all__ = ["ManifestContextBuilder", "resolve_image"]


def resolve_image(
    distribution: Distribution,
    catalog: Mapping[str, str],
    overrides: Mapping[str, str],
) -> str:
    """Determine the server image of a Distribution.

    Parameters
    ----------
    distribution
        Distribution being reconciled.
    catalog
        Static catalog mapping distribution names to images.
    overrides
        Operator-configured images that replace catalog entries.

    Returns
    -------
    str
        Image reference.

    Raises
    ------
    InvalidDistributionError
        Raised if the Distribution names neither a catalog entry nor an
        image.
    UnknownDistributionError
        Raised if the named catalog entry does not exist.
    """
    selection = distribution.spec.server.distribution
    if selection.name:
        if selection.name not in catalog:
            raise UnknownDistributionError(
                selection.name,
                namespace=distribution.namespace,
                name=distribution.name,
            )
        return overrides.get(selection.name) or catalog[selection.name]
    if selection.image:
        return selection.image
    msg = "Distribution must set either a name or an image"
    raise InvalidDistributionError(
        msg, namespace=distribution.namespace, name=distribution.name
    )


class ManifestContextBuilder:
    """Build the run-time inputs that templates cannot provide.

    Parameters
    ----------
    catalog
        Static catalog mapping distribution names to images.
    operator_config
        Operator-wide settings, including image overrides.
    """

    def __init__(
        self, catalog: Mapping[str, str], operator_config: OperatorConfig
    ) -> None:
        self._catalog = catalog
        self._config = operator_config
        self._pod_spec_builder = PodSpecBuilder()

    def build(
        self, distribution: Distribution, observed: ObservedConfig
    ) -> ManifestContext:
        """Build the context for one reconcile.

        Parameters
        ----------
        distribution
            Distribution being reconciled.
        observed
            Configuration observed while reconciling ConfigMaps.

        Returns
        -------
        ManifestContext
            Resolved image, pod spec, and content hashes.

        Raises
        ------
        InvalidDistributionError
            Raised if the Distribution names neither a catalog entry nor an
            image.
        UnknownDistributionError
            Raised if the named catalog entry does not exist.
        """
        image = resolve_image(
            distribution, self._catalog, self._config.image_overrides
        )
        pod_spec = self._pod_spec_builder.build(
            distribution, image, ca_bundle=observed.ca_bundle
        )
        return ManifestContext(
            image=image, pod_spec=pod_spec, hashes=dict(observed.hashes)
        )
