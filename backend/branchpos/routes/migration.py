# backend/branchpos/routes/migration.py
"""Branch migration routes (admin only)."""

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_tenant_context, require_admin_role
from ..errors import SERVICE_ERRORS, json_error
from ..services import migration_service
from ..services.tenant_service import get_current_context
from ..validation import PayloadPolicy, validate_payload, FIELD_TEXT


migration_bp = Blueprint("migration", __name__, url_prefix="/api/migration")

MIGRATE_POLICY = PayloadPolicy(
    fields={"default_branch_id": FIELD_TEXT},
    required=frozenset({"default_branch_id"}),
)


@migration_bp.get("")
@require_tenant_context
@require_admin_role
def migration_status_route():
    try:
        return jsonify(migration_service.migration_status(get_current_context())), 200
    except SERVICE_ERRORS as e:
        return json_error(e)


@migration_bp.post("")
@require_tenant_context
@require_admin_role
def run_migration_route():
    """Assign default_branch_id to every unassigned record. Body: {default_branch_id}"""
    try:
        data = validate_payload(payload=request.get_json(silent=True), policy=MIGRATE_POLICY)
        count = migration_service.migrate(get_current_context(), data["default_branch_id"])
        return jsonify({"success": True, "migrated_count": count}), 200

    except SERVICE_ERRORS as e:
        return json_error(e)
    except Exception:
        current_app.logger.exception("Branch migration failed")
        return jsonify({"error": "Internal server error"}), 500
