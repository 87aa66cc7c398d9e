"""Allowed-unit filter."""

import logging
from collections.abc import Iterable
from pathlib import Path

import yaml  # type: ignore[import-untyped]

from ..config import ConfigError
from ..directory_client import Unit

logger = logging.getLogger(__name__)


class AllowlistPolicy:
    """
    Decides which directory units take part in the sync.

    Without an allowlist every unit is in scope. With one, a unit is in scope
    when its name case-insensitively matches an entry.
    """

    def __init__(self, allowed_units: Iterable[str] | None = None):
        self._allowed: set[str] | None = (
            None if allowed_units is None else {u.strip().lower() for u in allowed_units}
        )

    @classmethod
    def from_file(cls, path: Path | None) -> "AllowlistPolicy":
        """
        Load the allowlist from a YAML or JSON file holding a list of unit names.

        Args:
            path: Allowlist file, or None to allow every unit

        Raises:
            ConfigError: If the file is missing, unreadable or not a list of strings
        """
        if path is None:
            logger.info("No allowed units file specified, all units are allowed")
            return cls()

        if not path.exists():
            raise ConfigError(f"Allowed units file does not exist: {path}")

        try:
            with open(path) as f:
                # JSON is a subset of YAML, so safe_load reads both
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read allowed units file {path}: {e}") from None

        if not isinstance(data, list) or not all(isinstance(u, str) for u in data):
            raise ConfigError(
                f"Invalid format in {path}: expected a list of unit names (strings)"
            )

        logger.info("Retrieved allowed units", extra={"count": len(data), "file": str(path)})
        return cls(data)

    @property
    def restricted(self) -> bool:
        return self._allowed is not None

    def describe(self) -> str:
        if self._allowed is None:
            return "all allowed"
        return f"{len(self._allowed)} units allowed"

    def is_allowed(self, unit_name: str) -> bool:
        if self._allowed is None:
            return True
        return unit_name.strip().lower() in self._allowed

    def filter(self, units: Iterable[Unit]) -> list[Unit]:
        return [u for u in units if self.is_allowed(u.name)]
