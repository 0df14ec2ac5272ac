# Overview: Service-layer access to the tenant and operator document stores; whole-document reads and writes.

"""
Document Store Invariants (authoritative)

- The tenant document is the unit of persistence: reads return the whole
  document parsed into a TenantSnapshot, writes replace the whole payload.
- Records are validated on the way in (TenantSnapshot.from_document); a
  malformed stored record raises ValidationError, it is never trusted.
- Writes are last-writer-wins. revision is bumped on every write and is
  informational (pollers use it to detect change); it is not a lock.
- A failed write rolls back and raises PersistenceError. Nothing retries
  automatically; the caller decides.
- Committed tenant writes are published on the change feed.
- Operator documents are a separate access domain and are not published.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db, change_feed
from ..models import TenantDocument, OperatorDocument
from ..schemas import TenantSnapshot, OperatorSnapshot, TENANT_COLLECTIONS

ALL_TENANT_COLLECTIONS = tuple(TENANT_COLLECTIONS.keys())


class PersistenceError(Exception):
    """Raised when a store read or write fails. Retryable by the caller."""
    retryable = True

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def _get_tenant_row(tenant_id: str) -> TenantDocument | None:
    return db.session.query(TenantDocument).filter_by(tenant_id=tenant_id).first()


def _get_operator_row(tenant_id: str, operator_id: str) -> OperatorDocument | None:
    return (
        db.session.query(OperatorDocument)
        .filter_by(tenant_id=tenant_id, operator_id=operator_id)
        .first()
    )


def tenant_exists(tenant_id: str) -> bool:
    try:
        return _get_tenant_row(tenant_id) is not None
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError("Failed to read tenant document", details={"tenant_id": tenant_id}) from exc


def create_tenant_document(tenant_id: str, payload: dict | None = None) -> TenantSnapshot:
    """
    Create the tenant document if it does not exist (idempotent).
    The initial payload is validated before it is stored.
    """
    snapshot = TenantSnapshot.from_document(tenant_id, payload or {})
    try:
        row = _get_tenant_row(tenant_id)
        if row is None:
            row = TenantDocument(tenant_id=tenant_id, payload=snapshot.to_document(), revision=1)
            db.session.add(row)
            db.session.commit()
        return TenantSnapshot.from_document(tenant_id, row.payload, row.revision)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError("Failed to create tenant document", details={"tenant_id": tenant_id}) from exc


def read_tenant_document(tenant_id: str) -> tuple[dict, int]:
    """Raw payload and revision. A missing tenant reads as an empty document at revision 0."""
    try:
        row = _get_tenant_row(tenant_id)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError("Failed to read tenant document", details={"tenant_id": tenant_id}) from exc
    if row is None:
        return {}, 0
    return dict(row.payload or {}), row.revision


def read_tenant_snapshot(tenant_id: str) -> TenantSnapshot:
    payload, revision = read_tenant_document(tenant_id)
    return TenantSnapshot.from_document(tenant_id, payload, revision)


def write_tenant_snapshot(snapshot: TenantSnapshot, *, changed=ALL_TENANT_COLLECTIONS) -> int:
    """
    Replace the tenant document with snapshot (one write). Returns the new
    revision. `changed` names the collections to announce on the change feed.
    """
    document = snapshot.to_document()
    try:
        row = _get_tenant_row(snapshot.tenant_id)
        if row is None:
            row = TenantDocument(tenant_id=snapshot.tenant_id, payload=document, revision=1)
            db.session.add(row)
        else:
            # new dict so the JSON column registers the change
            row.payload = document
            row.revision = (row.revision or 0) + 1
        db.session.commit()
        revision = row.revision
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.warning(
            "Tenant document write failed tenant=%s read_revision=%s", snapshot.tenant_id, snapshot.revision
        )
        raise PersistenceError(
            "Failed to write tenant document",
            details={"tenant_id": snapshot.tenant_id},
        ) from exc

    if revision != snapshot.revision + 1:
        # Another writer got in between our read and this write; last writer wins.
        current_app.logger.info(
            "Tenant document overwritten across revisions tenant=%s read=%s written=%s",
            snapshot.tenant_id, snapshot.revision, revision,
        )
    snapshot.revision = revision
    change_feed.publish(snapshot.tenant_id, changed, document, revision)
    return revision


def read_operator_snapshot(tenant_id: str, operator_id: str) -> OperatorSnapshot:
    try:
        row = _get_operator_row(tenant_id, operator_id)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(
            "Failed to read operator document",
            details={"tenant_id": tenant_id, "operator_id": operator_id},
        ) from exc
    if row is None:
        return OperatorSnapshot(operator_id=operator_id, tenant_id=tenant_id)
    return OperatorSnapshot.from_document(operator_id, tenant_id, row.payload, row.revision)


def write_operator_snapshot(snapshot: OperatorSnapshot) -> int:
    document = snapshot.to_document()
    try:
        row = _get_operator_row(snapshot.tenant_id, snapshot.operator_id)
        if row is None:
            row = OperatorDocument(
                tenant_id=snapshot.tenant_id,
                operator_id=snapshot.operator_id,
                payload=document,
                revision=1,
            )
            db.session.add(row)
        else:
            row.payload = document
            row.revision = (row.revision or 0) + 1
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PersistenceError(
            "Failed to write operator document",
            details={"tenant_id": snapshot.tenant_id, "operator_id": snapshot.operator_id},
        ) from exc
    snapshot.revision = row.revision
    return row.revision
