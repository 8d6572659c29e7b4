"""Metrics infrastructure (Prometheus)."""

from device_service.infra.metrics.prometheus import REGISTRY

__all__ = ["REGISTRY"]
