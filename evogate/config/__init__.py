"""Configuration module for evogate."""

from evogate.config.loader import get_config_path, load_config, save_config
from evogate.config.schema import Config

__all__ = ["Config", "get_config_path", "load_config", "save_config"]
