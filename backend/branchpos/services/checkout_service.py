# Overview: Service-layer checkout orchestration; cart, state machine and the single whole-document write.

"""
Checkout Orchestrator

WHY: A sale touches inventory, the transaction list, the customer ledger and
the operator's receivables. All tenant-side effects go out as ONE document
write, so there is never a partially-written transaction to observe.

STATES:
    IDLE -> AWAITING_PAYMENT_DETAILS -> PERSISTING -> COMPLETED | FAILED

- begin(): non-empty cart + valid method. Credit needs a customer and is
  rejected with CreditLimitExceeded when total > creditLimit - balance;
  the cart and the state are left untouched.
- complete(): runs the persisting steps in order:
    1. acting operator must have a branch (MissingBranchAssignment, no write)
    2. read the tenant snapshot
    3. decrement the cart against the acting branch's items only
    4. build the immutable Transaction (completed for cash/mpesa,
       pending for credit)
    5. credit: extend credit on the customer, build the receivable Expense
    6. merge inventory: other branches untouched + this branch's slice
    7. append the transaction, write {inventory, transactions, customers}
    8. append the Expense to the operator-scoped store
    9. any failure up to and including step 7 -> FAILED, cart kept,
       error re-raised (PersistenceError is retryable by calling begin again)
   10. success -> COMPLETED, cart cleared, receipt scheduled
- A complete() while PERSISTING or after COMPLETED is refused
  (CheckoutStateError). There is no idempotency key beyond the state
  machine: a new session submitting the same cart creates a second sale.

CONCURRENCY: No locks. Two cashiers of the same branch checking out at the
same moment can both decrement the same pre-sale quantity; the later write
wins (accepted, see DESIGN.md). A PERSISTING checkout cannot be cancelled.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from flask import current_app

from branchpos.time_utils import utcnow, epoch_millis
from ..schemas import (
    CartLine,
    Customer,
    Expense,
    InventoryItem,
    Transaction,
    TransactionLine,
    PAYMENT_CASH,
    PAYMENT_CREDIT,
    PAYMENT_MPESA,
    VALID_PAYMENT_METHODS,
    STATUS_COMPLETED,
    STATUS_PENDING,
    money_out,
)
from ..validation import ValidationError, coerce_decimal, coerce_int, coerce_text
from . import activity_service
from .credit_service import (
    DEFAULT_LOAN_TERM_DAYS,
    CreditLimitExceeded,
    authorize_credit,
    build_receivable_expense,
    extend_credit,
)
from .document_store_service import (
    PersistenceError,
    read_operator_snapshot,
    read_tenant_snapshot,
    write_operator_snapshot,
    write_tenant_snapshot,
)
from .identifier_service import new_transaction_id
from .inventory_service import decrement_branch_stock, filter_by_branch, merge_branch_inventory
from .pricing_service import (
    DEFAULT_VAT_RATE,
    CartTotals,
    compute_cart_totals,
    compute_item_vat,
    resolve_unit_price,
    validate_discount,
)
from .tenant_service import MissingBranchAssignment, TenantContext, require_branch


# =============================================================================
# CHECKOUT STATES (CONSTANTS)
# =============================================================================

STATE_IDLE = "IDLE"
STATE_AWAITING_PAYMENT_DETAILS = "AWAITING_PAYMENT_DETAILS"
STATE_PERSISTING = "PERSISTING"
STATE_COMPLETED = "COMPLETED"
STATE_FAILED = "FAILED"

CHECKOUT_WRITE_COLLECTIONS = ("inventory", "transactions", "customers")


class CheckoutError(Exception):
    """Raised for checkout operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class CheckoutStateError(CheckoutError):
    """Operation not allowed in the session's current state."""


# =============================================================================
# CART
# =============================================================================

class Cart:
    """
    Lines with frozen effective prices, a cart-level discount and an optional
    selected customer. Stock checks here are advisory (against the caller's
    view); checkout re-checks against the snapshot it writes.
    """

    def __init__(self, customer: Customer | None = None):
        self.lines: list[CartLine] = []
        self.discount_pct = Decimal("0")
        self.customer = customer

    def __len__(self) -> int:
        return len(self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    def find(self, product_id: str) -> CartLine | None:
        return next((line for line in self.lines if line.product_id == product_id), None)

    def add_item(self, item: InventoryItem, quantity: int = 1, customer: Customer | None = None) -> CartLine:
        """
        Add quantity of item. A new line freezes its effective price now
        (special-customer pricing included); an existing line keeps its price.
        """
        quantity = coerce_int("quantity", quantity)
        if quantity <= 0:
            raise ValidationError("quantity must be > 0")
        if item.is_deleted or item.quantity <= 0:
            raise ValidationError("Product out of stock", details={"product_id": item.id})

        existing = self.find(item.id)
        new_quantity = quantity + (existing.quantity if existing else 0)
        if new_quantity > item.quantity:
            raise ValidationError(
                "Insufficient stock",
                details={"product_id": item.id, "requested_quantity": new_quantity, "on_hand": item.quantity},
            )

        if existing:
            line = replace(existing, quantity=new_quantity)
            self.lines = [line if l.product_id == item.id else l for l in self.lines]
            return line

        line = CartLine(
            product_id=item.id,
            name=item.name,
            sku=item.sku,
            quantity=quantity,
            unit_price=resolve_unit_price(item.selling_price, customer or self.customer),
        )
        self.lines.append(line)
        return line

    def update_quantity(self, product_id: str, quantity: int, item: InventoryItem | None = None) -> None:
        quantity = coerce_int("quantity", quantity)
        if quantity <= 0:
            self.remove(product_id)
            return
        if item is not None and quantity > item.quantity:
            raise ValidationError(
                "Insufficient stock",
                details={"product_id": product_id, "requested_quantity": quantity, "on_hand": item.quantity},
            )
        if self.find(product_id) is None:
            raise ValidationError("Line not in cart", details={"product_id": product_id})
        self.lines = [replace(l, quantity=quantity) if l.product_id == product_id else l for l in self.lines]

    def update_price(self, product_id: str, unit_price) -> None:
        """Manual price override by the cashier."""
        price = coerce_decimal("unit_price", unit_price)
        if price < 0:
            raise ValidationError("unit_price must be >= 0")
        if self.find(product_id) is None:
            raise ValidationError("Line not in cart", details={"product_id": product_id})
        self.lines = [replace(l, unit_price=price) if l.product_id == product_id else l for l in self.lines]

    def remove(self, product_id: str) -> None:
        self.lines = [l for l in self.lines if l.product_id != product_id]

    def set_discount(self, discount_pct) -> Decimal:
        self.discount_pct = validate_discount(discount_pct)
        return self.discount_pct

    def set_customer(self, customer: Customer | None) -> None:
        # lines already in the cart keep their frozen prices
        self.customer = customer

    def clear(self) -> None:
        self.lines = []
        self.discount_pct = Decimal("0")
        self.customer = None

    def totals(self, vat_rate=DEFAULT_VAT_RATE) -> CartTotals:
        return compute_cart_totals(self.lines, self.discount_pct, vat_rate)


# =============================================================================
# TRANSACTION / RECEIPT BUILDERS
# =============================================================================

def _payment_extra(method: str, total: Decimal, payment_details: dict | None) -> dict:
    """Tender details stored alongside the transaction (cash change, M-Pesa code)."""
    details = payment_details or {}
    if method == PAYMENT_CASH and details.get("amount_tendered") not in (None, ""):
        tendered = coerce_decimal("amount_tendered", details["amount_tendered"])
        if tendered < total:
            raise ValidationError(
                "Amount tendered is less than the total",
                details={"amount_tendered": money_out(tendered), "total": money_out(total)},
            )
        return {"amountPaid": money_out(tendered), "change": money_out(tendered - total)}
    if method == PAYMENT_MPESA and details.get("reference"):
        return {"mpesaReference": coerce_text("reference", details["reference"]).upper()}
    return {}


def build_transaction(
    ctx: TenantContext,
    branch_id: str,
    cart_lines: list[CartLine],
    discount_pct,
    payment_method: str,
    *,
    customer: Customer | None = None,
    vat_rate=DEFAULT_VAT_RATE,
    payment_details: dict | None = None,
    now: datetime | None = None,
) -> Transaction:
    now = now or utcnow()
    totals = compute_cart_totals(cart_lines, discount_pct, vat_rate)
    lines = tuple(
        TransactionLine(
            product_id=lv.line.product_id,
            name=lv.line.name,
            sku=lv.line.sku,
            quantity=lv.line.quantity,
            price=lv.line.unit_price,
            item_total=lv.item_total,
            item_vat=lv.item_vat,
            item_price_before_vat=lv.item_price_before_vat,
            vat_rate=lv.vat_rate,
        )
        for lv in compute_item_vat(cart_lines, vat_rate)
    )
    return Transaction(
        id=new_transaction_id(epoch_millis(now)),
        timestamp=now,
        branch_id=branch_id,
        cashier_id=ctx.operator_id,
        cashier_name=ctx.operator_name or None,
        customer_id=customer.id if customer else None,
        customer_name=(customer.name or None) if customer else None,
        lines=lines,
        subtotal=totals.subtotal,
        discount_pct=totals.discount_pct,
        discount_amount=totals.discount_amount,
        price_before_vat=totals.price_before_vat,
        vat_amount=totals.total_vat,
        vat_rate=totals.vat_rate,
        total=totals.total,
        payment_method=payment_method,
        payment_status=STATUS_PENDING if payment_method == PAYMENT_CREDIT else STATUS_COMPLETED,
        extra=_payment_extra(payment_method, totals.total, payment_details),
    )


def build_receipt(transaction: Transaction, *, branch_name: str | None = None) -> dict:
    """Printable receipt payload handed to the (external) receipt printer."""
    return {
        "transaction_id": transaction.id,
        "timestamp": transaction.to_dict()["timestamp"],
        "branch_id": transaction.branch_id,
        "branch_name": branch_name,
        "cashier": transaction.cashier_name,
        "customer": transaction.customer_name,
        "lines": [
            {
                "name": line.name,
                "quantity": line.quantity,
                "price": money_out(line.price),
                "total": money_out(line.item_total),
            }
            for line in transaction.lines
        ],
        "subtotal": money_out(transaction.subtotal),
        "discount_amount": money_out(transaction.discount_amount),
        "price_before_vat": money_out(transaction.price_before_vat),
        "vat_amount": money_out(transaction.vat_amount),
        "vat_rate": float(transaction.vat_rate),
        "total": money_out(transaction.total),
        "payment_method": transaction.payment_method,
        "payment_status": transaction.payment_status,
        "amount_paid": transaction.extra.get("amountPaid"),
        "change": transaction.extra.get("change"),
    }


# =============================================================================
# CHECKOUT SESSION (STATE MACHINE)
# =============================================================================

@dataclass
class CheckoutResult:
    transaction: Transaction
    revision: int
    customer: Optional[Customer] = None
    expense: Optional[Expense] = None
    receipt: dict = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


class CheckoutSession:
    """One cashier's checkout flow over a cart. Not shared between threads."""

    def __init__(
        self,
        ctx: TenantContext,
        cart: Cart | None = None,
        *,
        vat_rate=DEFAULT_VAT_RATE,
        loan_term_days: int = DEFAULT_LOAN_TERM_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ctx = ctx
        self.cart = cart if cart is not None else Cart()
        self.vat_rate = coerce_decimal("vat_rate", vat_rate)
        self.loan_term_days = loan_term_days
        self.clock = clock

        self.state = STATE_IDLE
        self.payment_method: str | None = None
        self.customer: Customer | None = None
        self.last_error: Exception | None = None
        self.last_result: CheckoutResult | None = None
        self._receipt_callbacks: list[Callable[[dict], None]] = []

    # -------------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------------

    def on_receipt(self, callback: Callable[[dict], None]) -> None:
        self._receipt_callbacks.append(callback)

    def _schedule_receipt(self, receipt: dict) -> None:
        for callback in list(self._receipt_callbacks):
            try:
                callback(receipt)
            except Exception:
                current_app.logger.exception("Receipt callback failed for %s", receipt.get("transaction_id"))

    def _transition(self, new_state: str) -> None:
        current_app.logger.info(
            "Checkout %s -> %s tenant=%s operator=%s",
            self.state, new_state, self.ctx.tenant_id, self.ctx.operator_id,
        )
        self.state = new_state

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def begin(self, payment_method: str, customer: Customer | None = None) -> CartTotals:
        """
        IDLE (or FAILED, for a manual retry) -> AWAITING_PAYMENT_DETAILS.

        Raises ValidationError / CreditLimitExceeded without changing state.
        """
        if self.state not in (STATE_IDLE, STATE_FAILED):
            raise CheckoutStateError(f"Cannot begin checkout in state {self.state}")

        method = str(payment_method or "").strip().lower()
        if method not in VALID_PAYMENT_METHODS:
            raise ValidationError(
                f"Invalid payment method: {payment_method}. Must be one of {list(VALID_PAYMENT_METHODS)}"
            )
        if self.cart.is_empty:
            raise ValidationError("Cart is empty")

        totals = self.cart.totals(self.vat_rate)
        customer = customer or self.cart.customer
        if method == PAYMENT_CREDIT:
            if customer is None:
                raise ValidationError("Credit sales require a customer")
            authorize_credit(customer, totals.total)

        self.payment_method = method
        self.customer = customer
        self.last_error = None
        self._transition(STATE_AWAITING_PAYMENT_DETAILS)
        return totals

    def cancel(self) -> None:
        """Back out of payment details (before the write starts)."""
        if self.state != STATE_AWAITING_PAYMENT_DETAILS:
            raise CheckoutStateError(f"Cannot cancel checkout in state {self.state}")
        self.payment_method = None
        self.customer = None
        self._transition(STATE_IDLE)

    def reset(self) -> None:
        """COMPLETED / FAILED -> IDLE for the next sale."""
        if self.state not in (STATE_COMPLETED, STATE_FAILED):
            raise CheckoutStateError(f"Cannot reset checkout in state {self.state}")
        self.payment_method = None
        self.customer = None
        self._transition(STATE_IDLE)

    def complete(self, payment_details: dict | None = None) -> CheckoutResult:
        """AWAITING_PAYMENT_DETAILS -> PERSISTING -> COMPLETED | FAILED."""
        if self.state == STATE_PERSISTING:
            raise CheckoutStateError("Checkout already in progress")
        if self.state != STATE_AWAITING_PAYMENT_DETAILS:
            raise CheckoutStateError(f"Cannot complete checkout in state {self.state}")

        self._transition(STATE_PERSISTING)
        try:
            result = self._persist(payment_details)
        except (MissingBranchAssignment, ValidationError, CreditLimitExceeded, PersistenceError) as exc:
            self.last_error = exc
            self._transition(STATE_FAILED)
            raise

        self.last_result = result
        self.cart.clear()
        self._transition(STATE_COMPLETED)
        self._schedule_receipt(result.receipt)
        return result

    # -------------------------------------------------------------------------
    # Persisting steps
    # -------------------------------------------------------------------------

    def _persist(self, payment_details: dict | None) -> CheckoutResult:
        ctx = self.ctx
        now = self.clock()

        # 1. branch guard, before any read or write
        branch_id = require_branch(ctx)

        # 2. shared snapshot
        snapshot = read_tenant_snapshot(ctx.tenant_id)

        # 3. branch-local decrement
        branch_items = filter_by_branch(snapshot.inventory, branch_id, include_deleted=True)
        updated_branch = decrement_branch_stock(branch_items, self.cart.lines)

        # 5 (read side). credit customer from the snapshot, not the caller's copy
        customer = None
        if self.customer is not None:
            customer = snapshot.find_customer(self.customer.id)
            if customer is None:
                raise ValidationError("Customer not found", details={"customer_id": self.customer.id})

        # 4. immutable transaction record
        transaction = build_transaction(
            ctx,
            branch_id,
            self.cart.lines,
            self.cart.discount_pct,
            self.payment_method,
            customer=customer,
            vat_rate=self.vat_rate,
            payment_details=payment_details,
            now=now,
        )

        # 5. credit ledger + receivable
        expense = None
        if self.payment_method == PAYMENT_CREDIT:
            authorize_credit(customer, transaction.total)
            customer = extend_credit(customer, transaction.total, now=now, term_days=self.loan_term_days)
            snapshot.customers = [customer if c.id == customer.id else c for c in snapshot.customers]
            expense = build_receivable_expense(
                transaction, customer, operator_id=ctx.operator_id, due_date=customer.loan_due_date, now=now
            )

        # 6. partition merge
        snapshot.inventory = merge_branch_inventory(snapshot.inventory, branch_id, updated_branch)

        # 7. one whole-document write
        snapshot.transactions = snapshot.transactions + [transaction]
        revision = write_tenant_snapshot(snapshot, changed=CHECKOUT_WRITE_COLLECTIONS)

        # The sale is committed from here on; later failures are warnings, not FAILED.
        warnings: list[str] = []

        # 8. receivable into the operator-scoped store
        if expense is not None:
            try:
                operator_doc = read_operator_snapshot(ctx.tenant_id, ctx.operator_id)
                operator_doc.expenses.append(expense)
                write_operator_snapshot(operator_doc)
            except (PersistenceError, ValidationError):
                current_app.logger.exception("Receivable not recorded for %s", transaction.id)
                warnings.append("receivable_not_recorded")

        activity = activity_service.log_committed_activity(
            ctx,
            activity_service.TRANSACTION_COMPLETED,
            f"Transaction completed: {len(transaction.lines)} items, Total: KES {money_out(transaction.total):,.2f}",
            details={
                "transactionId": transaction.id,
                "itemCount": transaction.item_count,
                "total": money_out(transaction.total),
                "paymentMethod": transaction.payment_method,
                "customerId": transaction.customer_id,
                "branchId": branch_id,
            },
            occurred_at=now,
        )
        if activity is None:
            warnings.append("activity_not_logged")

        branch = next((b for b in snapshot.branches if b.id == branch_id), None)
        return CheckoutResult(
            transaction=transaction,
            revision=revision,
            customer=customer if self.payment_method == PAYMENT_CREDIT else None,
            expense=expense,
            receipt=build_receipt(transaction, branch_name=branch.name if branch else None),
            warnings=warnings,
        )


# =============================================================================
# ONE-SHOT CHECKOUT (used by the HTTP route)
# =============================================================================

def checkout(
    ctx: TenantContext,
    lines: list[dict],
    *,
    payment_method: str,
    discount_pct=0,
    customer_id: str | None = None,
    payment_details: dict | None = None,
    vat_rate=DEFAULT_VAT_RATE,
    loan_term_days: int = DEFAULT_LOAN_TERM_DAYS,
) -> CheckoutResult:
    """
    Build a cart from {product_id, quantity} lines against the acting
    branch's items and run a full checkout session over it.
    """
    branch_id = require_branch(ctx)
    snapshot = read_tenant_snapshot(ctx.tenant_id)
    items = {i.id: i for i in filter_by_branch(snapshot.inventory, branch_id)}

    customer = None
    if customer_id:
        customer = snapshot.find_customer(customer_id)
        if customer is None:
            raise ValidationError("Customer not found", details={"customer_id": customer_id})

    cart = Cart(customer=customer)
    for raw in lines or []:
        if not isinstance(raw, dict):
            raise ValidationError("Each line must be an object")
        product_id = coerce_text("product_id", raw.get("product_id") or "")
        item = items.get(product_id)
        if item is None:
            raise ValidationError("Product not found in branch", details={"product_id": product_id})
        cart.add_item(item, raw.get("quantity", 1))
    cart.set_discount(discount_pct)

    session = CheckoutSession(ctx, cart, vat_rate=vat_rate, loan_term_days=loan_term_days)
    session.begin(payment_method, customer)
    return session.complete(payment_details)
