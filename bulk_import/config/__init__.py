"""Configuration loading."""

from .loader import ConfigError, PipelineConfig, default_config, load_config

__all__ = ["ConfigError", "PipelineConfig", "default_config", "load_config"]
