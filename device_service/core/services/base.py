"""Base service class for business logic."""

from __future__ import annotations

import logging

from device_service.infra.logging import get_lazy_logger


class BaseService:
    """Base class for long-lived service objects.

    Loggers:
        - self.logger: Standard logger for INFO/WARNING/ERROR (always evaluated)
        - self._lazy: Lazy logger for DEBUG (zero overhead when DEBUG disabled)

    Example:
        class TokenLedger(BaseService):
            def __init__(self, session_factory, settings):
                super().__init__()
                self._session_factory = session_factory

            async def sweep_expired(self) -> int:
                self.logger.info("Sweeping", extra={"operation": "sweep"})
                self._lazy.debug(lambda: f"State: {self._describe()}")
    """

    def __init__(self) -> None:
        class_name = self.__class__.__name__
        self.logger = logging.getLogger(class_name)
        self._lazy = get_lazy_logger(class_name)
