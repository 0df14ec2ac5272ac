# Overview: Pytest coverage for stored record validation at the document boundary.

from datetime import datetime
from decimal import Decimal

import pytest

from branchpos.schemas import (
    Customer,
    InventoryItem,
    StoreUser,
    TenantSnapshot,
    Transaction,
    normalize_branch_id,
)
from branchpos.validation import ValidationError


class TestBranchIds:
    @pytest.mark.parametrize("raw", [None, "", "NO_BRANCH"])
    def test_missing_forms_normalize_to_none(self, raw):
        assert normalize_branch_id(raw) is None

    def test_real_branch_kept(self):
        assert normalize_branch_id("uon") == "uon"

    def test_no_branch_marker_read_as_unassigned(self):
        item = InventoryItem.from_dict({"id": "i1", "name": "Salt", "branchId": "NO_BRANCH"})
        assert item.branch_id is None


class TestInventoryItem:
    def test_legacy_price_key(self):
        item = InventoryItem.from_dict({"id": "i1", "name": "Salt", "price": 45, "quantity": 3})
        assert item.selling_price == Decimal("45")

    def test_negative_quantity_rejected(self):
        with pytest.raises(ValidationError):
            InventoryItem.from_dict({"id": "i1", "quantity": -1})

    def test_missing_id_rejected(self):
        with pytest.raises(ValidationError):
            InventoryItem.from_dict({"name": "nameless"})

    def test_unknown_keys_survive(self):
        raw = {"id": "i1", "name": "Salt", "supplierId": "sup-1", "category": "Food"}
        data = InventoryItem.from_dict(raw).to_dict()
        assert data["supplierId"] == "sup-1"
        assert data["category"] == "Food"


class TestTransaction:
    RAW = {
        "id": "TXN-1-abc",
        "timestamp": "2026-03-01T09:30:00.000Z",
        "branchId": "branch-a",
        "userId": "cashier-a",
        "items": [{"id": "milk-a", "name": "Milk", "quantity": 2, "price": 100, "itemTotal": 200}],
        "total": 200,
        "paymentMethod": "Cash",
        "userBranchId": "branch-a",
    }

    def test_reads_legacy_user_id_and_case(self):
        txn = Transaction.from_dict(self.RAW)
        assert txn.cashier_id == "cashier-a"
        assert txn.payment_method == "cash"
        assert txn.payment_status == "completed"
        assert txn.timestamp == datetime(2026, 3, 1, 9, 30)
        assert txn.item_count == 2

    def test_user_branch_id_preserved(self):
        txn = Transaction.from_dict(self.RAW)
        assert txn.extra["userBranchId"] == "branch-a"
        assert txn.to_dict()["userBranchId"] == "branch-a"

    def test_unknown_line_keys_survive(self):
        raw = {**self.RAW, "items": [{**self.RAW["items"][0], "batchNo": "B-7", "serials": ["s1"]}]}
        line = Transaction.from_dict(raw).to_dict()["items"][0]
        assert line["batchNo"] == "B-7"
        assert line["serials"] == ["s1"]
        assert line["itemTotal"] == 200.0

    def test_invalid_payment_method_rejected(self):
        with pytest.raises(ValidationError):
            Transaction.from_dict({**self.RAW, "paymentMethod": "barter"})

    def test_timestamp_required(self):
        raw = dict(self.RAW)
        del raw["timestamp"]
        with pytest.raises(ValidationError):
            Transaction.from_dict(raw)


class TestCustomerAndUser:
    def test_discount_rate_bounds(self):
        with pytest.raises(ValidationError):
            Customer.from_dict({"id": "c1", "discountRate": 120})

    def test_invalid_role_rejected(self):
        with pytest.raises(ValidationError):
            StoreUser.from_dict({"id": "u1", "role": "owner"})


class TestTenantSnapshot:
    def test_round_trip_keeps_untouched_collections(self):
        payload = {
            "inventory": [{"id": "i1", "name": "Salt", "branchId": "a"}],
            "suppliers": [{"id": "s1"}],
            "settings": {"currency": "KES"},
            "customField": 1,
        }
        doc = TenantSnapshot.from_document("t1", payload).to_document()
        assert doc["suppliers"] == [{"id": "s1"}]
        assert doc["settings"] == {"currency": "KES"}
        assert doc["customField"] == 1
        assert doc["transactions"] == []

    def test_collection_must_be_list(self):
        with pytest.raises(ValidationError):
            TenantSnapshot.from_document("t1", {"inventory": {"id": "i1"}})
