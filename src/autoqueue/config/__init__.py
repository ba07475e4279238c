"""Configuration module for the prompt queue."""

from .settings import Settings, load_settings
from .selectors import SelectorConfig, load_selectors

__all__ = ["Settings", "load_settings", "SelectorConfig", "load_selectors"]
