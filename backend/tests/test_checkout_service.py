# Overview: Pytest coverage for the checkout state machine and its single document write.

from dataclasses import replace
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from branchpos.extensions import db
from branchpos.services import checkout_service
from branchpos.services.checkout_service import (
    Cart,
    CheckoutSession,
    CheckoutStateError,
    STATE_AWAITING_PAYMENT_DETAILS,
    STATE_COMPLETED,
    STATE_FAILED,
    STATE_IDLE,
    STATE_PERSISTING,
)
from branchpos.services.credit_service import CreditLimitExceeded
from branchpos.services.document_store_service import (
    PersistenceError,
    read_operator_snapshot,
    read_tenant_document,
    read_tenant_snapshot,
    write_tenant_snapshot,
)
from branchpos.services.tenant_service import AuthorizationGuardError, MissingBranchAssignment
from branchpos.validation import ValidationError

NOW = datetime(2026, 3, 1, 9, 30)


def _item(item_id):
    return next(i for i in read_tenant_snapshot("shop-1").inventory if i.id == item_id)


def _customer(customer_id):
    return read_tenant_snapshot("shop-1").find_customer(customer_id)


def _session(ctx, *lines, customer=None):
    cart = Cart(customer=customer)
    for item_id, quantity in lines:
        cart.add_item(_item(item_id), quantity)
    return CheckoutSession(ctx, cart, clock=lambda: NOW)


class TestCart:
    def test_add_merges_lines_and_checks_stock(self, tenant):
        cart = Cart()
        cart.add_item(_item("bread-a"), 2)
        cart.add_item(_item("bread-a"), 3)
        assert cart.item_count == 5
        with pytest.raises(ValidationError):
            cart.add_item(_item("bread-a"), 1)

    def test_deleted_or_empty_item_out_of_stock(self, tenant):
        item = _item("bread-a")
        with pytest.raises(ValidationError):
            Cart().add_item(replace(item, quantity=0))
        with pytest.raises(ValidationError):
            Cart().add_item(replace(item, deleted_at=NOW))

    def test_special_price_frozen_at_add_time(self, tenant):
        cart = Cart(customer=_customer("cust-vip"))
        line = cart.add_item(_item("milk-a"), 1)
        assert line.unit_price == Decimal("900")

        cart.set_customer(None)
        assert cart.find("milk-a").unit_price == Decimal("900")

    def test_update_quantity_zero_removes(self, tenant):
        cart = Cart()
        cart.add_item(_item("milk-a"), 2)
        cart.update_quantity("milk-a", 0)
        assert cart.is_empty

    def test_manual_price_override(self, tenant):
        cart = Cart()
        cart.add_item(_item("milk-a"), 1)
        cart.update_price("milk-a", "850")
        assert cart.totals().total == Decimal("850.00")

    def test_discount_out_of_range(self):
        with pytest.raises(ValidationError):
            Cart().set_discount(101)


class TestCashCheckout:
    def test_completes_with_one_write(self, tenant, ctx_for):
        receipts = []
        session = _session(ctx_for("cashier-a"), ("milk-a", 2))
        session.on_receipt(receipts.append)
        _payload, revision_before = read_tenant_document("shop-1")

        session.begin("cash")
        assert session.state == STATE_AWAITING_PAYMENT_DETAILS
        result = session.complete({"amount_tendered": 2500})

        assert session.state == STATE_COMPLETED
        assert result.revision == revision_before + 1
        assert session.cart.is_empty

        txn = result.transaction
        assert txn.id.startswith("TXN-")
        assert txn.branch_id == "branch-a"
        assert txn.cashier_id == "cashier-a"
        assert txn.payment_status == "completed"
        assert txn.total == Decimal("2000.00")
        assert txn.vat_amount == Decimal("275.86")
        assert txn.extra["change"] == 500.0

        snapshot = read_tenant_snapshot("shop-1")
        assert [t.id for t in snapshot.transactions] == [txn.id]
        assert {i.id: i.quantity for i in snapshot.inventory}["milk-a"] == 8

        assert receipts and receipts[0]["transaction_id"] == txn.id
        assert receipts[0]["branch_name"] == "Branch A"

    def test_activity_logged(self, tenant, ctx_for):
        session = _session(ctx_for("cashier-a"), ("bread-a", 1))
        session.begin("mpesa")
        result = session.complete({"reference": "qk12abc"})

        assert result.transaction.extra["mpesaReference"] == "QK12ABC"
        activity = read_operator_snapshot("shop-1", "cashier-a").activities[0]
        assert activity["type"] == "transaction_completed"
        assert activity["details"]["transactionId"] == result.transaction.id

    def test_tender_below_total_fails(self, tenant, ctx_for):
        session = _session(ctx_for("cashier-a"), ("milk-a", 1))
        session.begin("cash")
        with pytest.raises(ValidationError):
            session.complete({"amount_tendered": 500})
        assert session.state == STATE_FAILED
        assert read_tenant_snapshot("shop-1").transactions == []

    def test_other_branch_stock_untouched(self, tenant, ctx_for):
        """Branch A sells 2; branch B's item keeps its quantity."""
        session = _session(ctx_for("cashier-a"), ("milk-a", 2))
        session.begin("cash")
        session.complete()

        quantities = {i.id: i.quantity for i in read_tenant_snapshot("shop-1").inventory}
        assert quantities["milk-a"] == 8
        assert quantities["milk-b"] == 7

    def test_concurrent_branches_both_preserved(self, tenant, ctx_for):
        session_a = _session(ctx_for("cashier-a"), ("milk-a", 1))
        session_b = _session(ctx_for("cashier-b"), ("milk-b", 2))
        session_a.begin("cash")
        session_b.begin("cash")

        session_a.complete()
        session_b.complete()

        snapshot = read_tenant_snapshot("shop-1")
        quantities = {i.id: i.quantity for i in snapshot.inventory}
        assert quantities["milk-a"] == 9
        assert quantities["milk-b"] == 5
        assert len(snapshot.transactions) == 2


class TestBranchGuard:
    def test_unassigned_cashier_cannot_checkout(self, tenant, ctx_for):
        ctx = ctx_for("cashier-x")
        session = _session(ctx, ("milk-a", 1))
        session.begin("cash")

        with pytest.raises(AuthorizationGuardError):
            session.complete()

        assert isinstance(session.last_error, MissingBranchAssignment)
        assert session.state == STATE_FAILED
        assert read_tenant_snapshot("shop-1").transactions == []
        assert not session.cart.is_empty

    def test_admin_without_branch_cannot_checkout(self, tenant, ctx_for):
        session = _session(ctx_for("admin-1"), ("milk-a", 1))
        session.begin("cash")
        with pytest.raises(MissingBranchAssignment):
            session.complete()

    def test_other_branch_item_in_cart_fails(self, tenant, ctx_for):
        session = _session(ctx_for("cashier-a"), ("milk-b", 1))
        session.begin("cash")
        with pytest.raises(ValidationError):
            session.complete()
        assert {i.id: i.quantity for i in read_tenant_snapshot("shop-1").inventory}["milk-b"] == 7


class TestCreditCheckout:
    def test_credit_sale_is_pending_and_books_receivable(self, tenant, ctx_for):
        customer = _customer("cust-1")
        session = _session(ctx_for("cashier-a"), ("milk-a", 2), customer=customer)
        session.begin("credit", customer)
        result = session.complete()

        assert result.transaction.payment_status == "pending"
        assert result.transaction.customer_id == "cust-1"

        stored = read_tenant_snapshot("shop-1").find_customer("cust-1")
        assert stored.balance == Decimal("2000")
        assert stored.loan_due_date == datetime(2026, 3, 31, 9, 30)

        expenses = read_operator_snapshot("shop-1", "cashier-a").expenses
        assert len(expenses) == 1
        assert expenses[0].category == "Credit Sales"
        assert expenses[0].amount == Decimal("2000")
        assert expenses[0].transaction_id == result.transaction.id

    def test_over_limit_rejected_before_any_write(self, tenant, ctx_for):
        """Balance 4000, limit 5000, cart 1500."""
        snapshot = read_tenant_snapshot("shop-1")
        snapshot.customers = [replace(c, balance=Decimal("4000")) if c.id == "cust-1" else c
                              for c in snapshot.customers]
        write_tenant_snapshot(snapshot)

        customer = _customer("cust-1")
        session = _session(ctx_for("cashier-a"), ("milk-a", 1), customer=customer)
        session.cart.update_price("milk-a", 1500)
        _payload, revision = read_tenant_document("shop-1")

        with pytest.raises(CreditLimitExceeded) as exc:
            session.begin("credit", customer)

        assert exc.value.details["available_credit"] == 1000.0
        assert session.state == STATE_IDLE
        assert not session.cart.is_empty
        assert read_tenant_document("shop-1")[1] == revision
        assert _customer("cust-1").balance == Decimal("4000")

    def test_credit_requires_customer(self, tenant, ctx_for):
        session = _session(ctx_for("cashier-a"), ("milk-a", 1))
        with pytest.raises(ValidationError):
            session.begin("credit")
        assert session.state == STATE_IDLE


class TestStateMachine:
    def test_empty_cart_rejected(self, tenant, ctx_for):
        with pytest.raises(ValidationError):
            CheckoutSession(ctx_for("cashier-a")).begin("cash")

    def test_unknown_method_rejected(self, tenant, ctx_for):
        with pytest.raises(ValidationError):
            _session(ctx_for("cashier-a"), ("milk-a", 1)).begin("cheque")

    def test_complete_without_begin_rejected(self, tenant, ctx_for):
        with pytest.raises(CheckoutStateError):
            _session(ctx_for("cashier-a"), ("milk-a", 1)).complete()

    def test_double_submit_while_persisting_rejected(self, tenant, ctx_for):
        session = _session(ctx_for("cashier-a"), ("milk-a", 1))
        session.begin("cash")
        session.state = STATE_PERSISTING
        with pytest.raises(CheckoutStateError):
            session.complete()
        assert read_tenant_snapshot("shop-1").transactions == []

    def test_second_complete_after_success_rejected(self, tenant, ctx_for):
        session = _session(ctx_for("cashier-a"), ("milk-a", 1))
        session.begin("cash")
        session.complete()
        with pytest.raises(CheckoutStateError):
            session.complete()
        assert len(read_tenant_snapshot("shop-1").transactions) == 1

    def test_reset_and_cancel(self, tenant, ctx_for):
        session = _session(ctx_for("cashier-a"), ("milk-a", 1))
        session.begin("cash")
        session.cancel()
        assert session.state == STATE_IDLE
        session.begin("cash")
        session.complete()
        session.reset()
        assert session.state == STATE_IDLE


class TestPersistenceFailure:
    def test_write_failure_keeps_cart_and_allows_retry(self, tenant, ctx_for, monkeypatch):
        session = _session(ctx_for("cashier-a"), ("milk-a", 2))
        session.begin("cash")

        def _boom():
            raise OperationalError("UPDATE tenant_documents", {}, Exception("database is locked"))

        monkeypatch.setattr(db.session, "commit", _boom)
        with pytest.raises(PersistenceError) as exc:
            session.complete()
        monkeypatch.undo()

        assert exc.value.retryable
        assert session.state == STATE_FAILED
        assert session.cart.item_count == 2
        snapshot = read_tenant_snapshot("shop-1")
        assert snapshot.transactions == []
        assert {i.id: i.quantity for i in snapshot.inventory}["milk-a"] == 10

        session.begin("cash")
        result = session.complete()
        assert session.state == STATE_COMPLETED
        assert {i.id: i.quantity for i in read_tenant_snapshot("shop-1").inventory}["milk-a"] == 8
        assert result.transaction.id


class TestAfterCommit:
    """Operator-store problems after the tenant write never undo or fail the sale."""

    def test_operator_write_failure_is_a_warning(self, tenant, ctx_for, operator_store_down):
        customer = _customer("cust-1")
        session = _session(ctx_for("cashier-a"), ("milk-a", 2), customer=customer)
        session.begin("credit", customer)

        result = session.complete()

        assert session.state == STATE_COMPLETED
        assert session.cart.is_empty
        assert result.warnings == ["receivable_not_recorded", "activity_not_logged"]
        snapshot = read_tenant_snapshot("shop-1")
        assert [t.id for t in snapshot.transactions] == [result.transaction.id]
        assert snapshot.find_customer("cust-1").balance == Decimal("2000")
        assert read_operator_snapshot("shop-1", "cashier-a").expenses == []

    def test_malformed_operator_document_does_not_fail_cash_sale(self, ctx_for, legacy_operator_document):
        legacy_operator_document("cashier-a")
        session = _session(ctx_for("cashier-a"), ("milk-a", 2))
        session.begin("cash")

        result = session.complete()

        assert session.state == STATE_COMPLETED
        assert session.last_error is None
        assert session.cart.is_empty
        assert result.warnings == ["activity_not_logged"]
        snapshot = read_tenant_snapshot("shop-1")
        assert len(snapshot.transactions) == 1
        assert {i.id: i.quantity for i in snapshot.inventory}["milk-a"] == 8

        # a second complete cannot sell the same cart again
        with pytest.raises(CheckoutStateError):
            session.complete()
        assert len(read_tenant_snapshot("shop-1").transactions) == 1

    def test_malformed_operator_document_credit_sale(self, ctx_for, legacy_operator_document):
        legacy_operator_document("cashier-a")
        customer = _customer("cust-1")
        session = _session(ctx_for("cashier-a"), ("bread-a", 1), customer=customer)
        session.begin("credit", customer)

        result = session.complete()

        assert session.state == STATE_COMPLETED
        assert result.warnings == ["receivable_not_recorded", "activity_not_logged"]
        assert read_tenant_snapshot("shop-1").find_customer("cust-1").balance == Decimal("50")

    def test_clean_sale_has_no_warnings(self, tenant, ctx_for):
        session = _session(ctx_for("cashier-a"), ("bread-a", 1))
        session.begin("cash")
        assert session.complete().warnings == []


class TestOneShotCheckout:
    def test_checkout_from_lines(self, tenant, ctx_for):
        result = checkout_service.checkout(
            ctx_for("cashier-b"),
            [{"product_id": "milk-b", "quantity": 3}],
            payment_method="cash",
            discount_pct=10,
        )
        assert result.transaction.total == Decimal("2700.00")
        assert result.transaction.discount_amount == Decimal("300.00")
        assert {i.id: i.quantity for i in read_tenant_snapshot("shop-1").inventory}["milk-b"] == 4

    def test_vip_customer_priced_on_entry(self, tenant, ctx_for):
        result = checkout_service.checkout(
            ctx_for("cashier-a"),
            [{"product_id": "milk-a", "quantity": 1}],
            payment_method="credit",
            customer_id="cust-vip",
        )
        assert result.transaction.total == Decimal("900.00")
        assert result.customer.balance == Decimal("900")

    def test_product_of_other_branch_not_found(self, tenant, ctx_for):
        with pytest.raises(ValidationError):
            checkout_service.checkout(
                ctx_for("cashier-a"), [{"product_id": "milk-b", "quantity": 1}], payment_method="cash"
            )
