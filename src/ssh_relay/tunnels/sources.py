"""Configuration sources feeding tunnel records to the registry.

The orchestrator persists nothing itself; after a restart it is rebuilt from
whatever list of configurations a source returns.
"""

import json
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..common.exceptions import ConfigurationError
from ..common.logging import get_logger
from .models import TunnelConfig

logger = get_logger(__name__)


class ConfigSource(ABC):
    """Provider of fully resolved tunnel configurations."""

    @abstractmethod
    def load(self) -> list[TunnelConfig]:
        ...

    def auto_start(self) -> list[TunnelConfig]:
        """Configurations flagged to connect when the service starts."""
        return [config for config in self.load() if config.auto_start]


def parse_records(records: Iterable[Any], origin: str = "records") -> list[TunnelConfig]:
    """Validate raw records, skipping the ones that fail.

    Duplicate names keep the first record.
    """
    configs: list[TunnelConfig] = []
    seen: set[str] = set()
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            logger.warning("Skipping non-object tunnel record", origin=origin, index=index)
            continue
        try:
            config = TunnelConfig.parse_record(record)
        except ValidationError as e:
            logger.warning(
                "Skipping invalid tunnel record",
                origin=origin,
                index=index,
                name=record.get("name"),
                errors=e.error_count(),
            )
            continue
        if config.name in seen:
            logger.warning("Skipping duplicate tunnel name", origin=origin, name=config.name)
            continue
        seen.add(config.name)
        configs.append(config)
    return configs


class StaticConfigSource(ConfigSource):
    """Configurations held in memory."""

    def __init__(self, configs: Iterable[TunnelConfig | dict[str, Any]]):
        self._configs = [
            config if isinstance(config, TunnelConfig) else TunnelConfig.parse_record(config)
            for config in configs
        ]

    def load(self) -> list[TunnelConfig]:
        return list(self._configs)


class JsonFileConfigSource(ConfigSource):
    """JSON file holding a list of tunnel records (nested or flat layout)."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> list[TunnelConfig]:
        """Read and validate the file.

        Raises:
            ConfigurationError: If the file is missing or not a JSON list
        """
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigurationError(f"Tunnel file not found: {self.path}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Tunnel file is not valid JSON: {self.path}: {e}") from e

        if isinstance(data, dict):
            data = data.get("tunnels", [])
        if not isinstance(data, list):
            raise ConfigurationError(f"Tunnel file must contain a list: {self.path}")

        configs = parse_records(data, origin=str(self.path))
        logger.info("Loaded tunnel configurations", path=str(self.path), count=len(configs))
        return configs
