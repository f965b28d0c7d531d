"""Security utilities for the breakdown tracker."""

from .allowlist import (
    DEFAULT_APPROVAL_CODES,
    DEFAULT_CLOSURE_CODES,
    DEFAULT_MAINTENANCE_CODES,
    AllowlistConfig,
    AllowlistValidationError,
    normalize_code,
)

__all__ = [
    "DEFAULT_APPROVAL_CODES",
    "DEFAULT_CLOSURE_CODES",
    "DEFAULT_MAINTENANCE_CODES",
    "AllowlistConfig",
    "AllowlistValidationError",
    "normalize_code",
]
