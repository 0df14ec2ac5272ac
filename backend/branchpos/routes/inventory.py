# backend/branchpos/routes/inventory.py
"""
Inventory routes.

SECURITY: All routes require tenant context.
- Reads are branch-scoped: cashiers/managers see their own branch, admins
  see all branches or the one passed as ?branch_id=.
- Receive and delete act on the operator's own branch only.
- Items without a branch never appear in a branch-scoped read.
"""
from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_tenant_context
from ..errors import SERVICE_ERRORS, json_error
from ..services import inventory_service
from ..services.document_store_service import read_tenant_snapshot
from ..services.identifier_service import lookup_item
from ..services.pricing_service import pricing_metrics
from ..services.tenant_service import get_current_context, view_branch, scope_records
from ..validation import PayloadPolicy, validate_payload, FIELD_INT, FIELD_MONEY


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

RECEIVE_POLICY = PayloadPolicy(
    fields={"quantity": FIELD_INT, "cost_price": FIELD_MONEY},
    required=frozenset({"quantity"}),
    nullable=frozenset({"cost_price"}),
)


def _scoped_items(include_deleted: bool = False):
    ctx = get_current_context()
    branch_id = view_branch(ctx, request.args.get("branch_id"))
    snapshot = read_tenant_snapshot(ctx.tenant_id)
    items = scope_records(snapshot.inventory, branch_id)
    if not include_deleted:
        items = [i for i in items if not i.is_deleted]
    return items


@inventory_bp.get("")
@require_tenant_context
def list_inventory_route():
    """
    Branch-scoped inventory.

    Query: branch_id (admin only), include_deleted=true
    """
    try:
        include_deleted = request.args.get("include_deleted", "").lower() == "true"
        items = _scoped_items(include_deleted)
        vat_rate = current_app.config["VAT_RATE"]
        return jsonify({
            "items": [
                {**i.to_dict(), "metrics": {
                    k: float(v) for k, v in pricing_metrics(i.selling_price, i.cost_price, vat_rate).items()
                }}
                for i in items
            ],
            "count": len(items),
        }), 200

    except SERVICE_ERRORS as e:
        return json_error(e)
    except Exception:
        current_app.logger.exception("Failed to list inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/lookup")
@require_tenant_context
def lookup_route():
    """Scanned code lookup: barcode, then SKU, then id."""
    code = request.args.get("code", "")
    if not code.strip():
        return jsonify({"error": "code required"}), 400
    try:
        item = lookup_item(_scoped_items(), code)
        if item is None:
            return jsonify({"error": "Item not found"}), 404
        return jsonify({"item": item.to_dict()}), 200

    except ValueError as e:
        # ValidationError is a ValueError too; ambiguity is a conflict
        if isinstance(e, SERVICE_ERRORS):
            return json_error(e)
        return jsonify({"error": str(e)}), 409
    except SERVICE_ERRORS as e:
        return json_error(e)


@inventory_bp.get("/alerts")
@require_tenant_context
def alerts_route():
    """Low-stock and expiring-soon items for the scoped view. Query: days (default 30)."""
    try:
        days = int(request.args.get("days", 30))
    except ValueError:
        return jsonify({"error": "days must be an integer"}), 400
    try:
        items = _scoped_items()
        return jsonify({
            "low_stock": [i.to_dict() for i in inventory_service.low_stock_items(items)],
            "expiring": [i.to_dict() for i in inventory_service.expiring_items(items, days)],
        }), 200

    except SERVICE_ERRORS as e:
        return json_error(e)


@inventory_bp.post("/<item_id>/receive")
@require_tenant_context
def receive_route(item_id: str):
    """Goods receipt into the operator's branch. Body: {quantity, cost_price?}"""
    try:
        data = validate_payload(payload=request.get_json(silent=True), policy=RECEIVE_POLICY)
        item = inventory_service.receive_branch_stock(
            get_current_context(), item_id, data["quantity"], cost_price=data.get("cost_price")
        )
        return jsonify({"item": item.to_dict()}), 200

    except SERVICE_ERRORS as e:
        return json_error(e)
    except Exception:
        current_app.logger.exception("Failed to receive stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.delete("/<item_id>")
@require_tenant_context
def delete_route(item_id: str):
    """Soft delete an item of the operator's branch."""
    try:
        item = inventory_service.delete_branch_item(get_current_context(), item_id)
        return jsonify({"item": item.to_dict()}), 200

    except SERVICE_ERRORS as e:
        return json_error(e)
    except Exception:
        current_app.logger.exception("Failed to delete item")
        return jsonify({"error": "Internal server error"}), 500
