"""Caller identity and the capability predicates every lending operation composes.

Operations never inspect raw role lists; they combine ``has_any_role`` with one
of the scoping predicates (``same_tenant``, ``same_organization``, ``is_self``)
and raise ``AuthorizationError`` through ``require``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from salary_advance.core.errors import AuthorizationError


class Role(str, Enum):
    ADMIN = "ADMIN"
    ORG_ADMIN = "ORG_ADMIN"
    EMPLOYEE = "EMPLOYEE"


@dataclass(slots=True, frozen=True)
class Caller:
    user_id: int
    tenant_id: int
    organization_id: int | None = None
    employee_id: int | None = None
    roles: frozenset[Role] = field(default_factory=frozenset)

    @classmethod
    def from_roles(
        cls,
        *,
        user_id: int,
        tenant_id: int,
        roles: Iterable[str | Role],
        organization_id: int | None = None,
        employee_id: int | None = None,
    ) -> "Caller":
        parsed = set()
        for role in roles:
            try:
                parsed.add(Role(role))
            except ValueError:
                continue
        return cls(
            user_id=user_id,
            tenant_id=tenant_id,
            organization_id=organization_id,
            employee_id=employee_id,
            roles=frozenset(parsed),
        )


def has_any_role(caller: Caller, roles: Iterable[Role]) -> bool:
    return bool(caller.roles & set(roles))


def same_tenant(caller: Caller, tenant_id) -> bool:
    return tenant_id is not None and caller.tenant_id == tenant_id


def same_organization(caller: Caller, organization_id) -> bool:
    return (
        caller.organization_id is not None
        and organization_id is not None
        and caller.organization_id == organization_id
    )


def is_self(caller: Caller, user_id) -> bool:
    return user_id is not None and caller.user_id == user_id


def can_manage_organization(caller: Caller, *, tenant_id, organization_id) -> bool:
    """ADMINs act across their tenant, ORG_ADMINs only inside their own organization."""
    if not same_tenant(caller, tenant_id):
        return False
    if has_any_role(caller, {Role.ADMIN}):
        return True
    if has_any_role(caller, {Role.ORG_ADMIN}):
        return same_organization(caller, organization_id)
    return False


def require(condition: bool, message: str, *, code: str = "forbidden") -> None:
    if not condition:
        raise AuthorizationError(message, code=code)
