# Overview: Service-layer operations for the customer credit ledger (deferred-payment sales).

"""
Credit Ledger

DESIGN PRINCIPLES:
- Customers are value records: every operation returns a new Customer and
  never mutates its argument. The pure functions do not persist; checkout
  writes the ledger change in the same document write as the sale.
- Repayments and settlement (bottom of this module) read, apply and write
  back in one tenant-document write each.
- The limit check happens at authorization time only. Two in-flight credit
  sales for the same customer are not checked against each other.
- balance never goes below zero.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from decimal import Decimal

from flask import current_app

from branchpos.time_utils import utcnow, add_days, epoch_millis
from ..schemas import Customer, Expense, Transaction, PAYMENT_CREDIT, STATUS_COMPLETED, STATUS_PENDING, round_money
from ..validation import ValidationError, coerce_decimal
from . import activity_service
from .document_store_service import read_tenant_snapshot, write_tenant_snapshot
from .identifier_service import new_record_id
from .tenant_service import AuthorizationGuardError, can_access_branch

DEFAULT_LOAN_TERM_DAYS = 30
CREDIT_SALES_CATEGORY = "Credit Sales"


class CreditLimitExceeded(Exception):
    """Raised when a credit sale would push a customer past their credit limit."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def available_credit(customer: Customer) -> Decimal:
    return customer.credit_limit - customer.balance


def authorize_credit(customer: Customer, amount) -> Decimal:
    """
    Check balance + amount <= creditLimit.

    Returns the available credit; raises CreditLimitExceeded otherwise.
    """
    amount = coerce_decimal("amount", amount)
    if amount <= 0:
        raise ValidationError("Credit amount must be positive")

    available = available_credit(customer)
    if amount > available:
        raise CreditLimitExceeded(
            "Credit limit exceeded",
            details={
                "customer_id": customer.id,
                "available_credit": float(round_money(available)),
                "amount": float(round_money(amount)),
                "credit_limit": float(round_money(customer.credit_limit)),
                "balance": float(round_money(customer.balance)),
            },
        )
    return available


def extend_credit(
    customer: Customer,
    amount,
    *,
    now: datetime | None = None,
    term_days: int = DEFAULT_LOAN_TERM_DAYS,
) -> Customer:
    """
    Book a credit sale against the customer.

    balance += amount, loanAmount += amount; loanDate / loanDueDate default
    to now / now + term_days when not already set (an open loan keeps its
    original dates).
    """
    amount = coerce_decimal("amount", amount)
    if amount <= 0:
        raise ValidationError("Credit amount must be positive")

    now = now or utcnow()
    return replace(
        customer,
        balance=customer.balance + amount,
        loan_amount=customer.loan_amount + amount,
        loan_date=customer.loan_date or now,
        loan_due_date=customer.loan_due_date or add_days(now, term_days),
    )


def record_payment(customer: Customer, amount) -> Customer:
    """
    Apply a repayment. Rejects non-positive amounts and overpayment
    (balance must stay >= 0). A fully repaid loan clears its dates.
    """
    amount = coerce_decimal("amount", amount)
    if amount <= 0:
        raise ValidationError("Payment amount must be positive")
    if amount > customer.balance:
        raise ValidationError(
            "Payment exceeds outstanding balance",
            details={
                "customer_id": customer.id,
                "balance": float(round_money(customer.balance)),
                "amount": float(round_money(amount)),
            },
        )

    balance = customer.balance - amount
    loan_amount = max(customer.loan_amount - amount, Decimal("0"))
    if balance == 0:
        return replace(customer, balance=balance, loan_amount=Decimal("0"), loan_date=None, loan_due_date=None)
    return replace(customer, balance=balance, loan_amount=loan_amount)


def build_receivable_expense(
    transaction: Transaction,
    customer: Customer,
    *,
    operator_id: str | None,
    due_date: datetime | None,
    now: datetime | None = None,
) -> Expense:
    """Receivable entry mirroring a credit sale (money owed to the business)."""
    now = now or utcnow()
    due_text = due_date.strftime("%Y-%m-%d") if due_date else "n/a"
    return Expense(
        id=new_record_id("EXP", epoch_millis(now)),
        date=now,
        amount=transaction.total,
        category=CREDIT_SALES_CATEGORY,
        description=f"Credit sale to {customer.name or customer.id} (Transaction: {transaction.id})",
        payment_method="Credit",
        notes=f"Customer loan - Due: {due_text}",
        transaction_id=transaction.id,
        customer_id=customer.id,
        created_by=operator_id,
    )


# =============================================================================
# PERSISTED LEDGER OPERATIONS
# =============================================================================

def _replace_customer(snapshot, customer: Customer) -> None:
    snapshot.customers = [customer if c.id == customer.id else c for c in snapshot.customers]


def record_customer_payment(ctx, customer_id: str, amount, *, now: datetime | None = None) -> Customer:
    """
    Apply a repayment to a stored customer and write the customers
    collection back. Returns the updated Customer.
    """
    now = now or utcnow()
    snapshot = read_tenant_snapshot(ctx.tenant_id)
    customer = snapshot.find_customer(customer_id)
    if customer is None:
        raise ValidationError("Customer not found", details={"customer_id": customer_id})

    updated = record_payment(customer, amount)
    _replace_customer(snapshot, updated)
    write_tenant_snapshot(snapshot, changed=("customers",))

    activity_service.log_committed_activity(
        ctx,
        activity_service.CREDIT_PAYMENT_RECORDED,
        f"Payment of KES {float(round_money(customer.balance - updated.balance)):,.2f} from {customer.name or customer.id}",
        details={
            "customerId": customer.id,
            "amount": float(round_money(customer.balance - updated.balance)),
            "balance": float(round_money(updated.balance)),
        },
        occurred_at=now,
    )
    return updated


def settle_credit_sale(ctx, transaction_id: str, *, now: datetime | None = None) -> Transaction:
    """
    pending -> completed for one credit transaction, paying its total off the
    customer's balance (capped at the outstanding balance). Transaction and
    customer go out in one document write.
    """
    now = now or utcnow()
    snapshot = read_tenant_snapshot(ctx.tenant_id)
    transaction = next((t for t in snapshot.transactions if t.id == transaction_id), None)
    if transaction is None:
        raise ValidationError("Transaction not found", details={"transaction_id": transaction_id})
    if not can_access_branch(ctx, transaction.branch_id):
        raise AuthorizationGuardError(
            "Cannot settle a transaction of another branch",
            details={"transaction_id": transaction_id, "branch_id": transaction.branch_id},
        )
    if transaction.payment_method != PAYMENT_CREDIT or transaction.payment_status != STATUS_PENDING:
        raise ValidationError(
            "Only pending credit transactions can be settled",
            details={
                "transaction_id": transaction_id,
                "payment_method": transaction.payment_method,
                "payment_status": transaction.payment_status,
            },
        )

    customer = snapshot.find_customer(transaction.customer_id)
    if customer is not None:
        paid = min(transaction.total, customer.balance)
        if paid > 0:
            _replace_customer(snapshot, record_payment(customer, paid))

    settled = replace(transaction, payment_status=STATUS_COMPLETED, settled_at=now)
    snapshot.transactions = [settled if t.id == transaction_id else t for t in snapshot.transactions]
    write_tenant_snapshot(snapshot, changed=("transactions", "customers"))

    current_app.logger.info("Credit sale settled tenant=%s transaction=%s", ctx.tenant_id, transaction_id)
    activity_service.log_committed_activity(
        ctx,
        activity_service.CREDIT_SETTLED,
        f"Credit sale {transaction_id} settled",
        details={"transactionId": transaction_id, "customerId": transaction.customer_id, "total": float(transaction.total)},
        occurred_at=now,
    )
    return settled
