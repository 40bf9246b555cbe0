"""Monitoring and observability package."""
from .health import HealthCheck
from .logging import mask_sensitive, setup_logging
from .metrics import metrics

__all__ = ["metrics", "mask_sensitive", "setup_logging", "HealthCheck"]
