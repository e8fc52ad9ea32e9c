"""Configuration module for facturabot."""

from facturabot.config.settings import DeploymentMode, Settings, get_settings

__all__ = ["Settings", "get_settings", "DeploymentMode"]
