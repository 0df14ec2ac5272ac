# Overview: Pytest coverage for the customer credit ledger.

from datetime import datetime
from decimal import Decimal

import pytest

from branchpos.schemas import Customer, STATUS_COMPLETED, STATUS_PENDING
from branchpos.services import credit_service
from branchpos.services.checkout_service import Cart, CheckoutSession
from branchpos.services.credit_service import (
    CreditLimitExceeded,
    authorize_credit,
    available_credit,
    extend_credit,
    record_payment,
)
from branchpos.services.document_store_service import (
    read_operator_snapshot,
    read_tenant_snapshot,
    write_tenant_snapshot,
)
from branchpos.services.tenant_service import AuthorizationGuardError
from branchpos.validation import ValidationError

NOW = datetime(2026, 3, 1, 9, 30)


def _customer(balance="0", limit="5000", **kwargs):
    return Customer(id="cust-1", name="Jane", balance=Decimal(balance), credit_limit=Decimal(limit), **kwargs)


class TestAuthorizeCredit:
    def test_over_limit_rejected(self):
        """balance 4000, limit 5000, sale 1500 -> only 1000 available."""
        customer = _customer(balance="4000")
        with pytest.raises(CreditLimitExceeded) as exc:
            authorize_credit(customer, Decimal("1500"))

        assert exc.value.details["available_credit"] == 1000.0
        assert exc.value.details["amount"] == 1500.0
        assert customer.balance == Decimal("4000")

    def test_exactly_available_is_allowed(self):
        assert authorize_credit(_customer(balance="4000"), 1000) == Decimal("1000")

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ValidationError):
            authorize_credit(_customer(), 0)

    def test_available_credit(self):
        assert available_credit(_customer(balance="1250.50")) == Decimal("3749.50")


class TestExtendCredit:
    def test_books_balance_and_loan_dates(self):
        original = _customer(balance="100")
        updated = extend_credit(original, Decimal("400"), now=NOW, term_days=30)

        assert updated.balance == Decimal("500")
        assert updated.loan_amount == Decimal("400")
        assert updated.loan_date == NOW
        assert updated.loan_due_date == datetime(2026, 3, 31, 9, 30)
        # argument untouched
        assert original.balance == Decimal("100")

    def test_open_loan_keeps_original_dates(self):
        first = extend_credit(_customer(), 100, now=NOW)
        second = extend_credit(first, 50, now=datetime(2026, 3, 10))
        assert second.loan_date == NOW
        assert second.loan_amount == Decimal("150")


class TestRecordPayment:
    def test_partial_payment(self):
        customer = extend_credit(_customer(), 1000, now=NOW)
        paid = record_payment(customer, 400)
        assert paid.balance == Decimal("600")
        assert paid.loan_amount == Decimal("600")
        assert paid.loan_due_date is not None

    def test_full_payment_clears_loan(self):
        customer = extend_credit(_customer(), 1000, now=NOW)
        paid = record_payment(customer, "1000")
        assert paid.balance == Decimal("0")
        assert paid.loan_date is None
        assert paid.loan_due_date is None

    def test_overpayment_rejected(self):
        with pytest.raises(ValidationError):
            record_payment(_customer(balance="100"), 100.01)

    def test_non_positive_rejected(self):
        with pytest.raises(ValidationError):
            record_payment(_customer(balance="100"), -5)


class TestPersistedLedger:
    def test_record_customer_payment_writes_balance(self, tenant, ctx_for):
        snapshot = read_tenant_snapshot("shop-1")
        snapshot.customers[0] = extend_credit(snapshot.customers[0], 800, now=NOW)
        write_tenant_snapshot(snapshot)

        ctx = ctx_for("cashier-a")
        updated = credit_service.record_customer_payment(ctx, "cust-1", 300)

        assert updated.balance == Decimal("500")
        assert read_tenant_snapshot("shop-1").find_customer("cust-1").balance == Decimal("500")
        activities = read_operator_snapshot("shop-1", "cashier-a").activities
        assert activities[0]["type"] == "credit_payment_recorded"

    def test_unknown_customer_rejected(self, tenant, ctx_for):
        with pytest.raises(ValidationError):
            credit_service.record_customer_payment(ctx_for("cashier-a"), "nobody", 10)

    def _credit_sale(self, ctx_for, quantity=2):
        ctx = ctx_for("cashier-a")
        snapshot = read_tenant_snapshot("shop-1")
        customer = snapshot.find_customer("cust-1")
        cart = Cart(customer=customer)
        cart.add_item(next(i for i in snapshot.inventory if i.id == "milk-a"), quantity)
        session = CheckoutSession(ctx, cart)
        session.begin("credit", customer)
        return ctx, session.complete()

    def test_settle_credit_sale(self, tenant, ctx_for):
        ctx, result = self._credit_sale(ctx_for)
        assert result.transaction.payment_status == STATUS_PENDING

        settled = credit_service.settle_credit_sale(ctx, result.transaction.id, now=NOW)

        assert settled.payment_status == STATUS_COMPLETED
        assert settled.settled_at == NOW
        snapshot = read_tenant_snapshot("shop-1")
        stored = next(t for t in snapshot.transactions if t.id == result.transaction.id)
        assert stored.payment_status == STATUS_COMPLETED
        assert snapshot.find_customer("cust-1").balance == Decimal("0")

    def test_settle_twice_rejected(self, tenant, ctx_for):
        ctx, result = self._credit_sale(ctx_for, quantity=1)
        credit_service.settle_credit_sale(ctx, result.transaction.id)
        with pytest.raises(ValidationError):
            credit_service.settle_credit_sale(ctx, result.transaction.id)

    def test_other_branch_cannot_settle(self, tenant, ctx_for):
        _ctx, result = self._credit_sale(ctx_for, quantity=1)
        with pytest.raises(AuthorizationGuardError):
            credit_service.settle_credit_sale(ctx_for("cashier-b"), result.transaction.id)


class TestActivityAfterCommit:
    """A committed ledger change is returned even when its activity entry cannot be written."""

    def _owing(self, amount):
        snapshot = read_tenant_snapshot("shop-1")
        snapshot.customers[0] = extend_credit(snapshot.customers[0], amount, now=NOW)
        write_tenant_snapshot(snapshot)

    def test_payment_not_raised_as_retryable(self, tenant, ctx_for, operator_store_down):
        self._owing(1000)
        ctx = ctx_for("cashier-a")

        updated = credit_service.record_customer_payment(ctx, "cust-1", 300)

        assert updated.balance == Decimal("700")
        assert read_tenant_snapshot("shop-1").find_customer("cust-1").balance == Decimal("700")

    def test_payment_with_malformed_operator_document(self, ctx_for, legacy_operator_document):
        legacy_operator_document("cashier-a")
        self._owing(1000)

        credit_service.record_customer_payment(ctx_for("cashier-a"), "cust-1", 250)

        assert read_tenant_snapshot("shop-1").find_customer("cust-1").balance == Decimal("750")

    def test_settlement_not_raised_as_retryable(self, tenant, ctx_for, operator_store_down):
        ctx = ctx_for("cashier-a")
        snapshot = read_tenant_snapshot("shop-1")
        customer = snapshot.find_customer("cust-1")
        cart = Cart(customer=customer)
        cart.add_item(next(i for i in snapshot.inventory if i.id == "bread-a"), 2)
        session = CheckoutSession(ctx, cart)
        session.begin("credit", customer)
        result = session.complete()

        settled = credit_service.settle_credit_sale(ctx, result.transaction.id)

        assert settled.payment_status == STATUS_COMPLETED
        assert read_tenant_snapshot("shop-1").find_customer("cust-1").balance == Decimal("0")

