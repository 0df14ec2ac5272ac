"""Tenant and operator document stores

Revision ID: 20261018_tenant_documents
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_tenant_documents"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "tenant_documents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", name="uq_tenant_documents_tenant"),
    )
    op.create_index("ix_tenant_documents_tenant_id", "tenant_documents", ["tenant_id"], unique=False)

    op.create_table(
        "operator_documents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("operator_id", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "operator_id", name="uq_operator_documents_tenant_operator"),
    )
    op.create_index("ix_operator_documents_tenant_id", "operator_documents", ["tenant_id"], unique=False)
    op.create_index("ix_operator_documents_operator_id", "operator_documents", ["operator_id"], unique=False)


def downgrade():
    op.drop_index("ix_operator_documents_operator_id", table_name="operator_documents")
    op.drop_index("ix_operator_documents_tenant_id", table_name="operator_documents")
    op.drop_table("operator_documents")
    op.drop_index("ix_tenant_documents_tenant_id", table_name="tenant_documents")
    op.drop_table("tenant_documents")
