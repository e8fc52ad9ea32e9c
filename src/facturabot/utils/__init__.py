"""Utility modules for facturabot."""

from facturabot.utils.exceptions import ConfigurationError, FacturaBotError

__all__ = [
    "FacturaBotError",
    "ConfigurationError",
]
