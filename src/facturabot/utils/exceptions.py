"""Custom exceptions for facturabot."""


class FacturaBotError(Exception):
    """Base exception for all facturabot errors."""

    pass


class ConfigurationError(FacturaBotError):
    """Error in configuration or settings."""

    pass
