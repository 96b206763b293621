"""Mirra configuration system."""

from mirra.config.manager import ConfigManager
from mirra.config.schema import MirraConfig, ModuleSection

__all__ = ["ConfigManager", "MirraConfig", "ModuleSection"]
