# Overview: Service-layer operations for the operator activity feed; append-only audit entries.

from __future__ import annotations

from typing import Optional
from datetime import datetime

from flask import current_app

from branchpos.time_utils import utcnow, to_utc_z, epoch_millis
from branchpos.validation import ValidationError
from .document_store_service import PersistenceError, read_operator_snapshot, write_operator_snapshot
from .identifier_service import new_record_id
from .tenant_service import TenantContext
"""
Activity Feed Invariants (authoritative)

- Append-only audit feed for operator actions, stored in the operator-scoped
  document (admin-only views).
- No domain/business logic in the feed itself.
- Most recent first; the feed keeps the newest MAX_ACTIVITIES entries.
- occurred_at is business time.
"""

MAX_ACTIVITIES = 500

TRANSACTION_COMPLETED = "transaction_completed"
STOCK_ADJUSTED = "stock_adjusted"
CREDIT_PAYMENT_RECORDED = "credit_payment_recorded"
CREDIT_SETTLED = "credit_settled"
MIGRATION_RUN = "migration_run"

ACTIVITY_TYPES = (
    TRANSACTION_COMPLETED,
    STOCK_ADJUSTED,
    CREDIT_PAYMENT_RECORDED,
    CREDIT_SETTLED,
    MIGRATION_RUN,
)


def build_activity(
    ctx: TenantContext,
    activity_type: str,
    description: str,
    details: Optional[dict] = None,
    occurred_at: Optional[datetime] = None,
) -> dict:
    if activity_type not in ACTIVITY_TYPES:
        raise ValueError(f"Unknown activity type: {activity_type}")
    occurred_at = occurred_at or utcnow()
    return {
        "id": new_record_id("ACT", epoch_millis(occurred_at)),
        "type": activity_type,
        "description": description,
        "details": dict(details or {}),
        "performedBy": {
            "id": ctx.operator_id,
            "name": ctx.operator_name,
            "role": ctx.role,
        },
        "branchId": ctx.branch_id,
        "timestamp": to_utc_z(occurred_at),
    }


def log_activity(
    ctx: TenantContext,
    activity_type: str,
    description: str,
    details: Optional[dict] = None,
    occurred_at: Optional[datetime] = None,
) -> dict:
    """
    Append an activity to the operator's feed and persist it.

    Raises PersistenceError if the operator document cannot be written.
    """
    entry = build_activity(ctx, activity_type, description, details, occurred_at)
    snapshot = read_operator_snapshot(ctx.tenant_id, ctx.operator_id)
    snapshot.activities = [entry] + snapshot.activities[: MAX_ACTIVITIES - 1]
    write_operator_snapshot(snapshot)
    return entry


def log_committed_activity(
    ctx: TenantContext,
    activity_type: str,
    description: str,
    details: Optional[dict] = None,
    occurred_at: Optional[datetime] = None,
) -> Optional[dict]:
    """
    log_activity for a mutation whose tenant write already committed.

    An unreachable or malformed operator store is logged and yields None;
    the caller still reports the mutation as done.
    """
    try:
        return log_activity(ctx, activity_type, description, details, occurred_at)
    except (PersistenceError, ValidationError):
        current_app.logger.exception(
            "Activity not logged tenant=%s operator=%s type=%s", ctx.tenant_id, ctx.operator_id, activity_type
        )
        return None


def list_activities(ctx: TenantContext, limit: int = 50) -> list[dict]:
    snapshot = read_operator_snapshot(ctx.tenant_id, ctx.operator_id)
    return snapshot.activities[: max(0, limit)]
