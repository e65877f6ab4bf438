"""Registry of batch scheduler collectors.

A registry is built once at process start and handed to whatever selects
the active collector.  Exactly one registered scheduler may be enabled.
"""

import logging
from typing import Callable

from ..exceptions import ConfigurationError
from .base import BatchScheduler
from .slurm import SlurmCollector

logger = logging.getLogger(__name__)

SchedulerFactory = Callable[..., BatchScheduler]


class SchedulerRegistry:
    """Map of scheduler name -> collector factory, plus which one is enabled."""

    def __init__(self):
        self._factories: dict[str, SchedulerFactory] = {}
        self._enabled: set[str] = set()

    def register(self, name: str, factory: SchedulerFactory, enabled: bool = False) -> None:
        name = name.lower()
        if name in self._factories:
            raise ConfigurationError(f"Batch scheduler {name!r} is already registered")
        self._factories[name] = factory
        if enabled:
            self._enabled.add(name)

    def enable(self, name: str) -> None:
        name = name.lower()
        if name not in self._factories:
            raise ConfigurationError(
                f"Unknown batch scheduler {name!r}. Known schedulers: {', '.join(self.names())}"
            )
        self._enabled.add(name)

    def disable(self, name: str) -> None:
        self._enabled.discard(name.lower())

    def names(self) -> list[str]:
        return sorted(self._factories)

    def enabled_names(self) -> list[str]:
        return sorted(self._enabled)

    def create(self, **kwargs) -> BatchScheduler:
        """Instantiate the single enabled collector.

        Args:
            **kwargs: Passed through to the collector factory

        Raises:
            ConfigurationError: If zero or more than one scheduler is enabled
        """
        enabled = self.enabled_names()
        if len(enabled) != 1:
            state = "No batch scheduler" if not enabled else f"Several batch schedulers ({', '.join(enabled)})"
            raise ConfigurationError(
                f"{state} enabled. Enable exactly one of [{', '.join(self.names())}]"
            )

        name = enabled[0]
        logger.debug(f"Setting up batch scheduler {name}")
        return self._factories[name](**kwargs)


def default_registry() -> SchedulerRegistry:
    """Registry with every built-in collector registered (none enabled)."""
    registry = SchedulerRegistry()
    registry.register(SlurmCollector.NAME, SlurmCollector)
    return registry
