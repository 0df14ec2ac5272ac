"""
Multi-Tenant Service: Tenant Context and Branch Access Helpers

WHY: Every core call is scoped to one tenant and, for cashiers, one branch.
The scope is an explicit TenantContext value passed into each service call;
nothing below resolves the tenant from ambient state.

SECURITY INVARIANTS:
1. A TenantContext is built only from an operator that exists and is active
   in the tenant document's users.
2. Cashiers and managers see exactly their own branch; a missing branch
   means they see nothing (fail-closed), never everything.
3. Admins see all branches, or one branch they select.
4. Records without a branch id are excluded from every branch-scoped view.

USAGE:
    from branchpos.services.tenant_service import resolve_context, require_branch

    ctx = resolve_context(tenant_id, operator_id)
    branch_id = require_branch(ctx)   # raises MissingBranchAssignment
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, TypeVar

from flask import g

from ..schemas import (
    ROLE_ADMIN,
    TenantSnapshot,
    is_valid_branch_id,
    normalize_branch_id,
)
from . import document_store_service

T = TypeVar("T")


class TenantAccessError(Exception):
    """Raised when the tenant or operator cannot be resolved."""
    pass


class AuthorizationGuardError(Exception):
    """Raised when the acting operator is not allowed to perform an operation."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class MissingBranchAssignment(AuthorizationGuardError):
    """The acting operator has no branch; branch-scoped writes are refused."""


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    operator_id: str
    role: str
    branch_id: Optional[str] = None
    operator_name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def context_from_snapshot(snapshot: TenantSnapshot, operator_id: str) -> TenantContext:
    user = snapshot.find_user(operator_id)
    if user is None or not user.is_active:
        raise TenantAccessError("Operator not found")
    return TenantContext(
        tenant_id=snapshot.tenant_id,
        operator_id=user.id,
        role=user.role,
        branch_id=user.branch_id,
        operator_name=user.name,
    )


def resolve_context(tenant_id: str | None, operator_id: str | None) -> TenantContext:
    """
    Build the explicit tenant context for an operator.

    Raises TenantAccessError if the tenant document or the operator is
    missing (callers should not reveal which one).
    """
    if not tenant_id or not operator_id:
        raise TenantAccessError("Tenant context not established")
    if not document_store_service.tenant_exists(tenant_id):
        raise TenantAccessError("Tenant not found")
    snapshot = document_store_service.read_tenant_snapshot(tenant_id)
    return context_from_snapshot(snapshot, operator_id)


def get_current_context() -> TenantContext:
    """
    Tenant context established by @require_tenant_context for this request.

    SECURITY: Raises TenantAccessError if not set.
    """
    ctx = getattr(g, "tenant_context", None)
    if ctx is None:
        raise TenantAccessError("Tenant context not established")
    return ctx


def require_branch(ctx: TenantContext) -> str:
    """The acting operator's branch, or MissingBranchAssignment."""
    if not is_valid_branch_id(ctx.branch_id):
        raise MissingBranchAssignment(
            "Operator has no branch assignment",
            details={"operator_id": ctx.operator_id, "role": ctx.role},
        )
    return ctx.branch_id


def require_admin(ctx: TenantContext) -> None:
    if not ctx.is_admin:
        raise AuthorizationGuardError(
            "Admin role required",
            details={"operator_id": ctx.operator_id, "role": ctx.role},
        )


def can_access_branch(ctx: TenantContext, branch_id: str | None) -> bool:
    if not is_valid_branch_id(branch_id):
        return False
    if ctx.is_admin:
        return True
    return is_valid_branch_id(ctx.branch_id) and ctx.branch_id == branch_id


def view_branch(ctx: TenantContext, selected_branch: str | None = None) -> Optional[str]:
    """
    Branch filter for a read.

    Admin: the selected branch, or None for all branches.
    Others: their own branch (a selection of another branch is refused).
    """
    selected = normalize_branch_id(selected_branch)
    if ctx.is_admin:
        return selected
    own = require_branch(ctx)
    if selected and selected != own:
        raise AuthorizationGuardError(
            "Cannot view another branch",
            details={"branch_id": selected},
        )
    return own


def scope_records(records: Iterable[T], branch_id: str | None) -> list[T]:
    """
    Filter branch-partitioned records for a view. branch_id None means all
    branches (admin view); otherwise records lacking a branch never match.
    """
    records = list(records)
    if branch_id is None:
        return records
    return [r for r in records if getattr(r, "branch_id", None) is not None and r.branch_id == branch_id]
