"""Configuration package for the CourierX lifecycle engine."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
