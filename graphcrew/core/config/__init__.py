"""Configuration module."""

from graphcrew.core.config.loader import load_config
from graphcrew.core.config.schema import AgentConfig, Config, SummarizationConfig

__all__ = ["AgentConfig", "Config", "SummarizationConfig", "load_config"]
