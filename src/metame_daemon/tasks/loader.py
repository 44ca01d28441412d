"""daemon.yaml loading utilities."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import DaemonConfig


class ConfigLoadError(RuntimeError):
    """Raised when the daemon configuration cannot be read or validated."""


class ConfigReloadFailed(ConfigLoadError):
    """Raised when a live reload is rejected; the running configuration is kept."""


class ConfigLoader:
    """Loads and validates the daemon configuration from a YAML file on disk."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def load(self) -> DaemonConfig:
        """Load the whole document; any error rejects it as a unit."""

        if not self.exists():
            raise ConfigLoadError(f"No daemon config found at {self._path}")

        try:
            document = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ConfigLoadError(f"Failed to parse YAML in {self._path}: {exc}") from exc
        except OSError as exc:
            raise ConfigLoadError(f"Failed to read {self._path}: {exc}") from exc

        if not document:
            raise ConfigLoadError(f"Daemon config {self._path} is empty")
        if not isinstance(document, dict):
            raise ConfigLoadError(f"Daemon config {self._path} must be a mapping")

        try:
            return DaemonConfig.model_validate(document)
        except ValidationError as exc:
            raise ConfigLoadError(f"Config validation error in {self._path}: {exc}") from exc


def load_config(path: Path) -> DaemonConfig:
    """Convenience wrapper for loading the daemon configuration."""

    return ConfigLoader(path).load()


__all__ = ["ConfigLoadError", "ConfigLoader", "ConfigReloadFailed", "load_config"]
