"""Configuration module for acekb."""

from acekb.config.loader import load_config
from acekb.config.schema import Config

__all__ = ["Config", "load_config"]
