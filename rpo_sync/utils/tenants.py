"""
Tenant identifier validation.

Tenants map one-to-one to PostgreSQL schemas and appear verbatim in cache
keys, so names are restricted to identifier-safe characters.
"""

import re

from rpo_sync.errors import TenantValidationError

TENANT_PATTERN = re.compile(r"[A-Za-z0-9_]+")
MAX_TENANT_LENGTH = 63  # PostgreSQL NAMEDATALEN - 1


def validate_tenant(tenant: str) -> str:
    """Return the tenant unchanged or raise TenantValidationError."""
    if not tenant or not isinstance(tenant, str):
        raise TenantValidationError("Tenant is required and must be a string")

    if not TENANT_PATTERN.fullmatch(tenant):
        raise TenantValidationError(
            f'Invalid tenant "{tenant}": only letters, digits and underscore are allowed'
        )

    if len(tenant) > MAX_TENANT_LENGTH:
        raise TenantValidationError(
            f"Tenant too long ({len(tenant)} > {MAX_TENANT_LENGTH} characters)"
        )

    return tenant


def is_valid_tenant(tenant: str) -> bool:
    try:
        validate_tenant(tenant)
        return True
    except TenantValidationError:
        return False
