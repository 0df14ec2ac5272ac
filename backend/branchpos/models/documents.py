from __future__ import annotations

from ..extensions import db
from branchpos.time_utils import to_utc_z


class TenantDocument(db.Model):
    """
    Whole-document store for one tenant (the owning organization).

    MULTI-TENANT: One row per tenant, keyed by tenant_id. The payload holds
    {inventory[], transactions[], customers[], suppliers[], expenses[],
    users[], branches[], settings} and is always read and written as a unit.

    WRITE SEMANTICS:
    - Last writer wins (no version_id_col). Each branch only rewrites its
      own inventory partition.
    - revision increments on every write; pollers compare it to detect change.
    """
    __tablename__ = "tenant_documents"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", name="uq_tenant_documents_tenant"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(128), nullable=False, index=True)

    payload = db.Column(db.JSON, nullable=False, default=dict)
    revision = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<TenantDocument tenant_id={self.tenant_id!r} revision={self.revision}>"

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "revision": self.revision,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class OperatorDocument(db.Model):
    """
    Operator-scoped store: per-cashier {expenses[], activities[]}.

    ACCESS: Separate access domain from the tenant document; only admin
    views read it. Credit-sale receivables land here.
    """
    __tablename__ = "operator_documents"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "operator_id", name="uq_operator_documents_tenant_operator"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(128), nullable=False, index=True)
    operator_id = db.Column(db.String(128), nullable=False, index=True)

    payload = db.Column(db.JSON, nullable=False, default=dict)
    revision = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<OperatorDocument tenant_id={self.tenant_id!r} operator_id={self.operator_id!r}>"

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "operator_id": self.operator_id,
            "revision": self.revision,
            "updated_at": to_utc_z(self.updated_at),
        }
