"""Utility modules for RPO Sync."""

from .config import Settings, get_settings
from .logging import SensitiveDataFilter, setup_logging
from .tenants import validate_tenant, is_valid_tenant

__all__ = [
    "Settings",
    "get_settings",
    "SensitiveDataFilter",
    "setup_logging",
    "validate_tenant",
    "is_valid_tenant",
]
