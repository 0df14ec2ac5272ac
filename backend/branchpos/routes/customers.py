# backend/branchpos/routes/customers.py
"""Customer credit routes: ledger view and repayments."""

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_tenant_context
from ..errors import SERVICE_ERRORS, json_error
from ..schemas import money_out
from ..services import credit_service
from ..services.document_store_service import read_tenant_snapshot
from ..services.tenant_service import get_current_context
from ..validation import PayloadPolicy, validate_payload, FIELD_MONEY


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")

PAYMENT_POLICY = PayloadPolicy(
    fields={"amount": FIELD_MONEY},
    required=frozenset({"amount"}),
)


@customers_bp.get("/<customer_id>/credit")
@require_tenant_context
def credit_route(customer_id: str):
    """Balance, limit and available credit for one customer."""
    try:
        ctx = get_current_context()
        customer = read_tenant_snapshot(ctx.tenant_id).find_customer(customer_id)
        if customer is None:
            return jsonify({"error": "Customer not found"}), 404
        return jsonify({
            "customer": customer.to_dict(),
            "available_credit": money_out(credit_service.available_credit(customer)),
        }), 200

    except SERVICE_ERRORS as e:
        return json_error(e)


@customers_bp.post("/<customer_id>/payments")
@require_tenant_context
def record_payment_route(customer_id: str):
    """
    Record a repayment against the customer's balance.

    Body: {amount}. Overpayment is rejected (balance never goes negative).
    """
    try:
        data = validate_payload(payload=request.get_json(silent=True), policy=PAYMENT_POLICY)
        customer = credit_service.record_customer_payment(get_current_context(), customer_id, data["amount"])
        return jsonify({
            "customer": customer.to_dict(),
            "available_credit": money_out(credit_service.available_credit(customer)),
        }), 200

    except SERVICE_ERRORS as e:
        return json_error(e)
    except Exception:
        current_app.logger.exception("Failed to record customer payment")
        return jsonify({"error": "Internal server error"}), 500
