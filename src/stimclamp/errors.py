"""Domain-specific exceptions for the stimulus clamp runtime."""

from __future__ import annotations


class StimClampError(RuntimeError):
    """Base class for stimulus clamp runtime errors."""


class ConfigError(StimClampError):
    """Raised when protocol, options or optimisation setup is invalid."""


class ModelError(StimClampError):
    """Raised when the kinetic model or a derived expression is malformed."""


class ExpressionError(StimClampError):
    """Raised when an expression fails to parse or evaluate."""


class NumericsError(StimClampError):
    """Raised when a linear algebra step fails."""


__all__ = [
    "StimClampError",
    "ConfigError",
    "ModelError",
    "ExpressionError",
    "NumericsError",
]
