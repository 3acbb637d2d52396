"""Config dependency."""

import os
from pathlib import Path

from ..config import Config
from ..constants import CONFIGURATION_PATH

__all__ = ["ConfigDependency", "config_dependency"]


class ConfigDependency:
    """Dependency to manage a cached operator configuration.

    The operator configuration is read on first request, cached, and returned
    to all dependency callers unless `set_path` is called to change the
    configuration.

    Parameters
    ----------
    path
        Path to the operator configuration. Defaults to the value of the
        ``STACK_OPERATOR_CONFIG_PATH`` environment variable, if set.
    """

    def __init__(self, path: Path | None = None) -> None:
        if path is None:
            env_path = os.getenv("STACK_OPERATOR_CONFIG_PATH")
            path = Path(env_path) if env_path else CONFIGURATION_PATH
        self._path = path
        self._config: Config | None = None

    async def __call__(self) -> Config:
        return self.config

    @property
    def config(self) -> Config:
        """Load configuration if needed and return it.

        Returns
        -------
        Config
            Operator configuration.
        """
        if self._config is None:
            self._config = Config.from_file(self._path)
        return self._config

    def set_path(self, path: Path) -> None:
        """Change the configuration path and reload.

        Parameters
        ----------
        path
            New configuration path.
        """
        self._path = path
        self._config = Config.from_file(path)


config_dependency = ConfigDependency()
"""The dependency that will return the operator configuration."""
