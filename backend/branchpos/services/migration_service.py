# Overview: Service-layer one-time migration assigning a branch to legacy records.

"""
Migration Guard

Legacy tenant documents predate branches: inventory items, transactions and
non-admin users may carry no branch id ("", None or "NO_BRANCH" all count as
missing). Branch-scoped views exclude such records, so the admin is asked to
run this once.

- check_if_migration_needed(ctx): any record still unassigned?
- migrate(ctx, default_branch_id): assign in one pass and one write. A
  transaction's recorded userBranchId wins over the default. Returns the
  number of records changed; a second run changes 0 and does not write.

Admins never get a branch assigned (they see all branches).
"""

from __future__ import annotations

from dataclasses import replace

from flask import current_app

from ..schemas import TenantSnapshot, is_valid_branch_id, normalize_branch_id
from ..validation import ValidationError
from . import activity_service
from .document_store_service import read_tenant_snapshot, write_tenant_snapshot
from .tenant_service import TenantContext, require_admin

MIGRATED_COLLECTIONS = ("inventory", "transactions", "users")


def _unassigned_counts(snapshot: TenantSnapshot) -> dict:
    return {
        "inventory": sum(1 for i in snapshot.inventory if not is_valid_branch_id(i.branch_id)),
        "transactions": sum(1 for t in snapshot.transactions if not is_valid_branch_id(t.branch_id)),
        "users": sum(1 for u in snapshot.users if not u.is_admin and not is_valid_branch_id(u.branch_id)),
    }


def migration_status(ctx: TenantContext) -> dict:
    """Per-collection count of records lacking a branch."""
    snapshot = read_tenant_snapshot(ctx.tenant_id)
    counts = _unassigned_counts(snapshot)
    return {
        "migration_needed": any(counts.values()),
        "unassigned": counts,
        "branches": [b.id for b in snapshot.branches],
    }


def check_if_migration_needed(ctx: TenantContext) -> bool:
    return migration_status(ctx)["migration_needed"]


def migrate(ctx: TenantContext, default_branch_id: str) -> int:
    require_admin(ctx)
    default_branch_id = normalize_branch_id(default_branch_id)
    if default_branch_id is None:
        raise ValidationError("default_branch_id is required")

    snapshot = read_tenant_snapshot(ctx.tenant_id)
    known = {b.id for b in snapshot.branches}
    if known and default_branch_id not in known:
        raise ValidationError(
            "Unknown branch",
            details={"default_branch_id": default_branch_id, "branches": sorted(known)},
        )

    count = 0

    inventory = []
    for item in snapshot.inventory:
        if not is_valid_branch_id(item.branch_id):
            item = replace(item, branch_id=default_branch_id)
            count += 1
        inventory.append(item)

    transactions = []
    for txn in snapshot.transactions:
        if not is_valid_branch_id(txn.branch_id):
            recorded = normalize_branch_id(txn.extra.get("userBranchId"))
            txn = replace(txn, branch_id=recorded or default_branch_id)
            count += 1
        transactions.append(txn)

    users = []
    for user in snapshot.users:
        if not user.is_admin and not is_valid_branch_id(user.branch_id):
            user = replace(user, branch_id=default_branch_id)
            count += 1
        users.append(user)

    if count == 0:
        current_app.logger.info("No branch migration needed tenant=%s", ctx.tenant_id)
        return 0

    snapshot.inventory = inventory
    snapshot.transactions = transactions
    snapshot.users = users
    write_tenant_snapshot(snapshot, changed=MIGRATED_COLLECTIONS)

    current_app.logger.info(
        "Branch migration complete tenant=%s default_branch=%s migrated=%s",
        ctx.tenant_id, default_branch_id, count,
    )
    activity_service.log_committed_activity(
        ctx,
        activity_service.MIGRATION_RUN,
        f"Branch migration: {count} records assigned to {default_branch_id}",
        details={"defaultBranchId": default_branch_id, "migratedCount": count},
    )
    return count
