"""Tenant / provisioning record match validation.

Before reconciling, make sure the provisioning record actually belongs to
the tenant being looked up. Tenant names drift between the two systems
(suffixes, prefixes), so the default strategy accepts containment in either
direction.

KNOWN RISK:
Containment has no minimum length. A very short tenant name is contained in
many unrelated names and will be accepted. Deployments that need a strict
check can pass ``exact_match`` as the strategy.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# (left, right) -> whether the two normalized names refer to the same tenant
MatchStrategy = Callable[[str, str], bool]


def exact_match(left: str, right: str) -> bool:
    """Names must be identical."""
    return left == right


def substring_match(left: str, right: str) -> bool:
    """Names match when either contains the other."""
    return left == right or left in right or right in left


@dataclass(frozen=True)
class TenantMatchResult:
    """Outcome of a match validation."""

    matches: bool
    warning: str | None = None
    error: str | None = None


def _normalize(name: str | None) -> str:
    return (name or "").strip().lower()


def validate_tenant_match(
    tenant_name: str | None,
    record_tenant_name: str | None,
    user_supplied: str | None,
    record_name: str | None = None,
    strategy: MatchStrategy = substring_match,
) -> TenantMatchResult:
    """Check that a provisioning record belongs to the looked-up tenant.

    Policy, in order:
    1. Record carries no tenant name: allow, with a warning
    2. License-service tenant name equals the record's tenant name
    3. Either name matches the other under ``strategy``
    4. The user's lookup key matches the record's tenant name under ``strategy``
    5. Otherwise: mismatch, with an error naming both tenants and the record

    Args:
        tenant_name: Tenant name reported by the license service.
        record_tenant_name: Tenant name on the provisioning record.
        user_supplied: What the operator typed as the tenant key.
        record_name: Provisioning record name, for the error message.
        strategy: Name comparison used for rules 3 and 4.

    Returns:
        A definite match result; never raises.
    """
    license_name = _normalize(tenant_name)
    record_tenant = _normalize(record_tenant_name)
    user_input = _normalize(user_supplied)

    if not record_tenant:
        logger.info(
            "Provisioning record has no tenant name, skipping match validation",
            extra={"record": record_name},
        )
        return TenantMatchResult(
            matches=True,
            warning="Provisioning record has no tenant name for validation",
        )

    if license_name == record_tenant:
        return TenantMatchResult(matches=True)

    if strategy(license_name, record_tenant) or strategy(user_input, record_tenant):
        logger.info(
            "Tenant matched provisioning record by name drift rule",
            extra={
                "tenant_name": tenant_name,
                "record_tenant_name": record_tenant_name,
                "record": record_name,
            },
        )
        return TenantMatchResult(matches=True)

    error = (
        f"Tenant mismatch: provisioning record '{record_name or '(unnamed)'}' is for tenant "
        f"'{record_tenant_name}', but the lookup was for '{user_supplied}' "
        f"(license-service tenant: '{tenant_name}'). "
        "Check that the provisioning record belongs to this tenant."
    )
    logger.warning(
        "Tenant/provisioning record mismatch",
        extra={
            "tenant_name": tenant_name,
            "record_tenant_name": record_tenant_name,
            "user_supplied": user_supplied,
            "record": record_name,
        },
    )
    return TenantMatchResult(matches=False, error=error)
