# Overview: Flask API routes for checkout; parses input and returns JSON responses.

# backend/branchpos/routes/checkout.py
"""Checkout API routes (branch-scoped, tenant context from headers)"""

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_tenant_context
from ..errors import SERVICE_ERRORS, json_error
from ..schemas import money_out
from ..services import checkout_service, credit_service
from ..services.document_store_service import read_tenant_snapshot
from ..services.inventory_service import filter_by_branch
from ..services.pricing_service import compute_item_vat
from ..services.tenant_service import get_current_context, require_branch
from ..validation import PayloadPolicy, ValidationError, validate_payload, FIELD_LIST, FIELD_DECIMAL, FIELD_TEXT


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")

CHECKOUT_POLICY = PayloadPolicy(
    fields={
        "lines": FIELD_LIST,
        "discount_pct": FIELD_DECIMAL,
        "payment_method": FIELD_TEXT,
        "customer_id": FIELD_TEXT,
    },
    required=frozenset({"lines", "payment_method"}),
    nullable=frozenset({"customer_id", "discount_pct"}),
)

QUOTE_POLICY = PayloadPolicy(
    fields={
        "lines": FIELD_LIST,
        "discount_pct": FIELD_DECIMAL,
        "customer_id": FIELD_TEXT,
    },
    required=frozenset({"lines"}),
    nullable=frozenset({"customer_id", "discount_pct"}),
)


def _checkout_payload():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    # payment_details is an object; checked by the checkout service
    payment_details = data.pop("payment_details", None)
    if payment_details is not None and not isinstance(payment_details, dict):
        raise ValidationError("payment_details must be an object")
    return validate_payload(payload=data, policy=CHECKOUT_POLICY), payment_details


@checkout_bp.post("")
@require_tenant_context
def checkout_route():
    """
    Full checkout: cart lines are decremented from the operator's branch and
    the sale is written in one document write.

    Body: {lines: [{product_id, quantity}], discount_pct, payment_method,
           customer_id?, payment_details?}
    """
    try:
        ctx = get_current_context()
        data, payment_details = _checkout_payload()
        result = checkout_service.checkout(
            ctx,
            data["lines"],
            payment_method=data["payment_method"],
            discount_pct=data.get("discount_pct") or 0,
            customer_id=data.get("customer_id"),
            payment_details=payment_details,
            vat_rate=current_app.config["VAT_RATE"],
            loan_term_days=current_app.config["DEFAULT_LOAN_TERM_DAYS"],
        )
        body = {
            "transaction": result.transaction.to_dict(),
            "receipt": result.receipt,
            "revision": result.revision,
            "warnings": result.warnings,
        }
        if result.customer is not None:
            body["customer"] = result.customer.to_dict()
        if result.expense is not None:
            body["expense"] = result.expense.to_dict()
        return jsonify(body), 201

    except SERVICE_ERRORS as e:
        return json_error(e)
    except Exception:
        current_app.logger.exception("Checkout failed")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.post("/quote")
@require_tenant_context
def quote_route():
    """Totals and per-line VAT for a prospective cart. Nothing is written."""
    try:
        ctx = get_current_context()
        data = validate_payload(payload=request.get_json(silent=True), policy=QUOTE_POLICY)
        branch_id = require_branch(ctx)

        snapshot = read_tenant_snapshot(ctx.tenant_id)
        items = {i.id: i for i in filter_by_branch(snapshot.inventory, branch_id)}
        customer = snapshot.find_customer(data.get("customer_id"))

        cart = checkout_service.Cart(customer=customer)
        for raw in data["lines"]:
            if not isinstance(raw, dict) or raw.get("product_id") not in items:
                return jsonify({"error": "Product not found in branch", "details": {"line": raw}}), 400
            cart.add_item(items[raw["product_id"]], raw.get("quantity", 1))
        cart.set_discount(data.get("discount_pct") or 0)

        vat_rate = current_app.config["VAT_RATE"]
        lines = [
            {
                "product_id": lv.line.product_id,
                "name": lv.line.name,
                "quantity": lv.line.quantity,
                "price": money_out(lv.line.unit_price),
                "item_total": money_out(lv.item_total),
                "item_vat": money_out(lv.item_vat),
                "item_price_before_vat": money_out(lv.item_price_before_vat),
            }
            for lv in compute_item_vat(cart.lines, vat_rate)
        ]
        return jsonify({"totals": cart.totals(vat_rate).to_dict(), "lines": lines}), 200

    except SERVICE_ERRORS as e:
        return json_error(e)
    except Exception:
        current_app.logger.exception("Checkout quote failed")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.post("/transactions/<transaction_id>/settle")
@require_tenant_context
def settle_route(transaction_id: str):
    """Settle a pending credit sale (pending -> completed)."""
    try:
        ctx = get_current_context()
        transaction = credit_service.settle_credit_sale(ctx, transaction_id)
        return jsonify({"transaction": transaction.to_dict()}), 200

    except SERVICE_ERRORS as e:
        return json_error(e)
    except Exception:
        current_app.logger.exception("Credit settlement failed")
        return jsonify({"error": "Internal server error"}), 500
