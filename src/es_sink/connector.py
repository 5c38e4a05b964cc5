"""
Connector object: validates configuration and fans it out to tasks.
"""

from __future__ import annotations

from typing import Mapping, Optional

from loguru import logger

from .config import SinkSettings
from .errors import ConfigError
from .task import SinkTask


class ElasticsearchSinkConnector:
    """Holds the connector-level properties and derives per-task configs."""

    def __init__(self) -> None:
        self._props: Optional[dict[str, str]] = None
        self._settings: Optional[SinkSettings] = None

    @staticmethod
    def version() -> str:
        return SinkTask.version()

    @staticmethod
    def task_class() -> type[SinkTask]:
        return SinkTask

    @staticmethod
    def validate(props: Mapping[str, str]) -> SinkSettings:
        """Parse ``props``; raises ConfigError when they are unusable."""
        return SinkSettings.from_props(props)

    def start(self, props: Mapping[str, str]) -> None:
        self._settings = self.validate(props)
        self._props = {str(k): str(v) for k, v in props.items()}
        logger.info(f"Connector started for {self._settings.urls}")

    def task_configs(self, max_tasks: int) -> list[dict[str, str]]:
        """One copy of the connector properties per task, each with its ``task.id``."""
        if self._props is None:
            raise ConfigError("Connector is not started")
        if max_tasks < 1:
            raise ConfigError(f"max_tasks must be >= 1, got {max_tasks}")
        return [{**self._props, "task.id": str(i)} for i in range(max_tasks)]

    def stop(self) -> None:
        if self._props is not None:
            logger.info("Connector stopped")
        self._props = None
        self._settings = None
