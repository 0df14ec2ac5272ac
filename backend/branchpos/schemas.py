# Overview: Typed record schemas for tenant and operator documents; parsed and validated at the store boundary.

"""
Record schemas

WHY: Tenant documents are schemaless JSON. Every record is parsed into an
explicit dataclass when it crosses the store boundary (read) and serialized
back with to_dict() (write), so services never trust raw storage shapes.

DESIGN:
- Each schema carries a record_type tag used in validation messages and
  in the collection registry.
- Keys unknown to a schema are kept in `extra` and written back untouched,
  so a whole-document write never drops fields owned by other screens.
- Money is Decimal in memory and a 2-place float in documents.
- Invalid branch ids ("", "NO_BRANCH") are normalized to None on read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, ClassVar, Optional

from branchpos.time_utils import to_utc_z
from .validation import (
    ValidationError,
    coerce_bool,
    coerce_datetime,
    coerce_decimal,
    coerce_int,
    coerce_money,
    coerce_text,
)

NO_BRANCH = "NO_BRANCH"

PAYMENT_CASH = "cash"
PAYMENT_MPESA = "mpesa"
PAYMENT_CREDIT = "credit"
VALID_PAYMENT_METHODS = (PAYMENT_CASH, PAYMENT_MPESA, PAYMENT_CREDIT)

STATUS_COMPLETED = "completed"
STATUS_PENDING = "pending"
VALID_PAYMENT_STATUSES = (STATUS_COMPLETED, STATUS_PENDING)

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_CASHIER = "cashier"
VALID_ROLES = (ROLE_ADMIN, ROLE_MANAGER, ROLE_CASHIER)

CENT = Decimal("0.01")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def money_out(value: Decimal) -> float:
    return float(round_money(value))


def is_valid_branch_id(branch_id: Any) -> bool:
    return bool(branch_id) and branch_id != NO_BRANCH


def normalize_branch_id(branch_id: Any) -> Optional[str]:
    if not is_valid_branch_id(branch_id):
        return None
    return str(branch_id).strip() or None


class _Reader:
    """Pulls typed fields out of a raw record, tracking which keys were consumed."""

    def __init__(self, record_type: str, raw: Any):
        if not isinstance(raw, dict):
            raise ValidationError(f"{record_type} record must be an object")
        self.record_type = record_type
        self.raw = raw
        self.used: set[str] = set()

    def _wrap(self, key: str, coercer, value):
        try:
            return coercer(key, value)
        except ValidationError as exc:
            ident = self.raw.get("id")
            raise ValidationError(
                f"{self.record_type} {ident!s}: {exc}",
                details={"record_type": self.record_type, "id": ident, "field": key},
            )

    def get(self, key: str, coercer, default=None):
        self.used.add(key)
        value = self.raw.get(key)
        if value is None or value == "":
            return default
        return self._wrap(key, coercer, value)

    def require(self, key: str, coercer):
        self.used.add(key)
        value = self.raw.get(key)
        if value is None or value == "":
            ident = self.raw.get("id")
            raise ValidationError(
                f"{self.record_type} {ident!s}: {key} is required",
                details={"record_type": self.record_type, "id": ident, "field": key},
            )
        return self._wrap(key, coercer, value)

    def extra(self) -> dict:
        return {k: v for k, v in self.raw.items() if k not in self.used}


def _with_extra(extra: dict, data: dict) -> dict:
    out = dict(extra)
    out.update(data)
    return out


@dataclass
class Branch:
    record_type: ClassVar[str] = "branch"

    id: str
    name: str
    is_active: bool = True
    extra: dict = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, raw: Any) -> "Branch":
        r = _Reader(cls.record_type, raw)
        return cls(
            id=r.require("id", coerce_text),
            name=r.get("name", coerce_text, ""),
            is_active=r.get("active", coerce_bool, True),
            extra=r.extra(),
        )

    def to_dict(self) -> dict:
        return _with_extra(self.extra, {"id": self.id, "name": self.name, "active": self.is_active})


@dataclass
class InventoryItem:
    """Stock record owned by exactly one branch (via branch_id)."""
    record_type: ClassVar[str] = "inventory_item"

    id: str
    name: str
    quantity: int = 0
    sku: Optional[str] = None
    barcode: Optional[str] = None
    reorder_level: int = 0
    cost_price: Decimal = Decimal("0")
    selling_price: Decimal = Decimal("0")
    branch_id: Optional[str] = None
    expiry_date: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    extra: dict = field(default_factory=dict, repr=False, compare=False)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_dict(cls, raw: Any) -> "InventoryItem":
        r = _Reader(cls.record_type, raw)
        item = cls(
            id=r.require("id", coerce_text),
            name=r.get("name", coerce_text, ""),
            quantity=r.get("quantity", coerce_int, 0),
            sku=r.get("sku", coerce_text),
            barcode=r.get("barcode", coerce_text),
            reorder_level=r.get("reorderLevel", coerce_int, 0),
            cost_price=r.get("costPrice", coerce_money, Decimal("0")),
            # legacy records carry "price" instead of "sellingPrice"
            selling_price=r.get("sellingPrice", coerce_money) or r.get("price", coerce_money, Decimal("0")),
            branch_id=normalize_branch_id(r.get("branchId", coerce_text)),
            expiry_date=r.get("expiryDate", coerce_datetime),
            deleted_at=r.get("deletedAt", coerce_datetime),
            extra=r.extra(),
        )
        if item.quantity < 0:
            raise ValidationError(
                f"inventory_item {item.id}: quantity must be >= 0",
                details={"record_type": cls.record_type, "id": item.id, "field": "quantity"},
            )
        return item

    def to_dict(self) -> dict:
        return _with_extra(self.extra, {
            "id": self.id,
            "sku": self.sku,
            "barcode": self.barcode,
            "name": self.name,
            "quantity": self.quantity,
            "reorderLevel": self.reorder_level,
            "costPrice": money_out(self.cost_price),
            "sellingPrice": money_out(self.selling_price),
            "branchId": self.branch_id,
            "expiryDate": to_utc_z(self.expiry_date),
            "deletedAt": to_utc_z(self.deleted_at),
        })


@dataclass(frozen=True)
class CartLine:
    """A cart entry. unit_price is the effective price frozen at add time."""
    record_type: ClassVar[str] = "cart_line"

    product_id: str
    quantity: int
    unit_price: Decimal
    name: str = ""
    sku: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "productId": self.product_id,
            "name": self.name,
            "sku": self.sku,
            "quantity": self.quantity,
            "price": money_out(self.unit_price),
        }


@dataclass(frozen=True)
class TransactionLine:
    record_type: ClassVar[str] = "transaction_line"

    product_id: str
    name: str
    quantity: int
    price: Decimal
    item_total: Decimal
    item_vat: Decimal
    item_price_before_vat: Decimal
    vat_rate: Decimal
    sku: Optional[str] = None
    extra: dict = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, raw: Any) -> "TransactionLine":
        r = _Reader(cls.record_type, raw)
        return cls(
            product_id=r.require("id", coerce_text),
            name=r.get("name", coerce_text, ""),
            sku=r.get("sku", coerce_text),
            quantity=r.get("quantity", coerce_int, 0),
            price=r.get("price", coerce_decimal, Decimal("0")),
            item_total=r.get("itemTotal", coerce_decimal, Decimal("0")),
            item_vat=r.get("itemVAT", coerce_decimal, Decimal("0")),
            item_price_before_vat=r.get("itemPriceBeforeVAT", coerce_decimal, Decimal("0")),
            vat_rate=r.get("vatRate", coerce_decimal, Decimal("0")),
            extra=r.extra(),
        )

    def to_dict(self) -> dict:
        return _with_extra(self.extra, {
            "id": self.product_id,
            "name": self.name,
            "sku": self.sku,
            "quantity": self.quantity,
            "price": money_out(self.price),
            "itemTotal": money_out(self.item_total),
            "itemVAT": money_out(self.item_vat),
            "itemPriceBeforeVAT": money_out(self.item_price_before_vat),
            "vatRate": float(self.vat_rate),
        })


@dataclass(frozen=True)
class Transaction:
    """
    Completed sale. Created exactly once at checkout; the only later change is
    the pending -> completed settlement of a credit sale.
    """
    record_type: ClassVar[str] = "transaction"

    id: str
    timestamp: datetime
    branch_id: Optional[str]
    cashier_id: Optional[str]
    lines: tuple[TransactionLine, ...]
    subtotal: Decimal
    discount_pct: Decimal
    discount_amount: Decimal
    price_before_vat: Decimal
    vat_amount: Decimal
    vat_rate: Decimal
    total: Decimal
    payment_method: str
    payment_status: str
    cashier_name: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    settled_at: Optional[datetime] = None
    extra: dict = field(default_factory=dict, repr=False, compare=False)

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    @classmethod
    def from_dict(cls, raw: Any) -> "Transaction":
        r = _Reader(cls.record_type, raw)
        method = r.get("paymentMethod", coerce_text, PAYMENT_CASH).lower()
        status = r.get("paymentStatus", coerce_text, STATUS_COMPLETED).lower()
        if method not in VALID_PAYMENT_METHODS:
            raise ValidationError(f"transaction {raw.get('id')!s}: invalid paymentMethod {method!r}")
        if status not in VALID_PAYMENT_STATUSES:
            raise ValidationError(f"transaction {raw.get('id')!s}: invalid paymentStatus {status!r}")
        raw_lines = r.get("items", lambda _k, v: v, []) or []
        if not isinstance(raw_lines, list):
            raise ValidationError(f"transaction {raw.get('id')!s}: items must be a list")
        r.used.add("itemCount")
        return cls(
            id=r.require("id", coerce_text),
            timestamp=r.require("timestamp", coerce_datetime),
            branch_id=normalize_branch_id(r.get("branchId", coerce_text)),
            cashier_id=r.get("cashierId", coerce_text) or r.get("userId", coerce_text),
            cashier_name=r.get("cashier", coerce_text),
            customer_id=r.get("customerId", coerce_text),
            customer_name=r.get("customerName", coerce_text),
            lines=tuple(TransactionLine.from_dict(line) for line in raw_lines),
            subtotal=r.get("subtotal", coerce_decimal, Decimal("0")),
            discount_pct=r.get("discount", coerce_decimal, Decimal("0")),
            discount_amount=r.get("discountAmount", coerce_decimal, Decimal("0")),
            price_before_vat=r.get("priceBeforeVAT", coerce_decimal, Decimal("0")),
            vat_amount=r.get("vatAmount", coerce_decimal, Decimal("0")),
            vat_rate=r.get("vatRate", coerce_decimal, Decimal("0.16")),
            total=r.get("total", coerce_decimal, Decimal("0")),
            payment_method=method,
            payment_status=status,
            settled_at=r.get("settledAt", coerce_datetime),
            extra=r.extra(),
        )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "timestamp": to_utc_z(self.timestamp),
            "userId": self.cashier_id,
            "cashierId": self.cashier_id,
            "cashier": self.cashier_name,
            "branchId": self.branch_id,
            "customerId": self.customer_id,
            "customerName": self.customer_name,
            "items": [line.to_dict() for line in self.lines],
            "subtotal": money_out(self.subtotal),
            "discount": float(self.discount_pct),
            "discountAmount": money_out(self.discount_amount),
            "priceBeforeVAT": money_out(self.price_before_vat),
            "vatAmount": money_out(self.vat_amount),
            "vatRate": float(self.vat_rate),
            "total": money_out(self.total),
            "paymentMethod": self.payment_method,
            "paymentStatus": self.payment_status,
            "itemCount": self.item_count,
        }
        if self.settled_at is not None:
            data["settledAt"] = to_utc_z(self.settled_at)
        return _with_extra(self.extra, data)


@dataclass
class Customer:
    record_type: ClassVar[str] = "customer"

    id: str
    name: str = ""
    balance: Decimal = Decimal("0")
    credit_limit: Decimal = Decimal("0")
    loan_amount: Decimal = Decimal("0")
    loan_date: Optional[datetime] = None
    loan_due_date: Optional[datetime] = None
    special_pricing: bool = False
    discount_rate: Decimal = Decimal("0")
    extra: dict = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, raw: Any) -> "Customer":
        r = _Reader(cls.record_type, raw)
        customer = cls(
            id=r.require("id", coerce_text),
            name=r.get("name", coerce_text, ""),
            balance=r.get("balance", coerce_decimal, Decimal("0")),
            credit_limit=r.get("creditLimit", coerce_money, Decimal("0")),
            loan_amount=r.get("loanAmount", coerce_decimal, Decimal("0")),
            loan_date=r.get("loanDate", coerce_datetime),
            loan_due_date=r.get("loanDueDate", coerce_datetime),
            special_pricing=r.get("specialPricing", coerce_bool, False),
            discount_rate=r.get("discountRate", coerce_decimal, Decimal("0")),
            extra=r.extra(),
        )
        if not Decimal("0") <= customer.discount_rate <= Decimal("100"):
            raise ValidationError(f"customer {customer.id}: discountRate must be between 0 and 100")
        return customer

    def to_dict(self) -> dict:
        return _with_extra(self.extra, {
            "id": self.id,
            "name": self.name,
            "balance": money_out(self.balance),
            "creditLimit": money_out(self.credit_limit),
            "loanAmount": money_out(self.loan_amount),
            "loanDate": to_utc_z(self.loan_date),
            "loanDueDate": to_utc_z(self.loan_due_date),
            "specialPricing": self.special_pricing,
            "discountRate": float(self.discount_rate),
        })


@dataclass(frozen=True)
class Expense:
    """Receivable mirroring a credit sale, kept in the operator-scoped store."""
    record_type: ClassVar[str] = "expense"

    id: str
    date: datetime
    amount: Decimal
    category: str = "Credit Sales"
    description: str = ""
    payment_method: str = "Credit"
    notes: str = ""
    transaction_id: Optional[str] = None
    customer_id: Optional[str] = None
    created_by: Optional[str] = None
    extra: dict = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_dict(cls, raw: Any) -> "Expense":
        r = _Reader(cls.record_type, raw)
        return cls(
            id=r.require("id", coerce_text),
            date=r.require("date", coerce_datetime),
            amount=r.get("amount", coerce_decimal, Decimal("0")),
            category=r.get("category", coerce_text, ""),
            description=r.get("description", coerce_text, ""),
            payment_method=r.get("paymentMethod", coerce_text, ""),
            notes=r.get("notes", coerce_text, ""),
            transaction_id=r.get("transactionId", coerce_text),
            customer_id=r.get("customerId", coerce_text),
            created_by=r.get("createdBy", coerce_text),
            extra=r.extra(),
        )

    def to_dict(self) -> dict:
        return _with_extra(self.extra, {
            "id": self.id,
            "date": to_utc_z(self.date),
            "category": self.category,
            "description": self.description,
            "amount": money_out(self.amount),
            "paymentMethod": self.payment_method,
            "notes": self.notes,
            "transactionId": self.transaction_id,
            "customerId": self.customer_id,
            "createdBy": self.created_by,
        })


@dataclass
class StoreUser:
    record_type: ClassVar[str] = "user"

    id: str
    name: str = ""
    role: str = ROLE_CASHIER
    branch_id: Optional[str] = None
    is_active: bool = True
    extra: dict = field(default_factory=dict, repr=False, compare=False)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @classmethod
    def from_dict(cls, raw: Any) -> "StoreUser":
        r = _Reader(cls.record_type, raw)
        role = r.get("role", coerce_text, ROLE_CASHIER).lower()
        if role not in VALID_ROLES:
            raise ValidationError(f"user {raw.get('id')!s}: invalid role {role!r}")
        return cls(
            id=r.require("id", coerce_text),
            name=r.get("name", coerce_text, ""),
            role=role,
            branch_id=normalize_branch_id(r.get("branchId", coerce_text)),
            is_active=r.get("isActive", coerce_bool, True),
            extra=r.extra(),
        )

    def to_dict(self) -> dict:
        return _with_extra(self.extra, {
            "id": self.id,
            "name": self.name,
            "role": self.role,
            "branchId": self.branch_id,
            "isActive": self.is_active,
        })


@dataclass
class TenantSnapshot:
    """
    Whole tenant document as read at `revision`. Suppliers, expenses and
    settings are carried through untouched; the core never interprets them.
    """
    tenant_id: str
    revision: int = 0
    inventory: list[InventoryItem] = field(default_factory=list)
    transactions: list[Transaction] = field(default_factory=list)
    customers: list[Customer] = field(default_factory=list)
    users: list[StoreUser] = field(default_factory=list)
    branches: list[Branch] = field(default_factory=list)
    suppliers: list[dict] = field(default_factory=list)
    expenses: list[dict] = field(default_factory=list)
    settings: dict = field(default_factory=dict)
    extra: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_document(cls, tenant_id: str, payload: dict | None, revision: int = 0) -> "TenantSnapshot":
        payload = dict(payload or {})

        def _records(key: str, schema):
            raw = payload.pop(key, None) or []
            if not isinstance(raw, list):
                raise ValidationError(f"tenant {tenant_id}: {key} must be a list")
            return [schema.from_dict(rec) for rec in raw]

        def _plain(key: str, default):
            value = payload.pop(key, None)
            return default if value is None else value

        return cls(
            tenant_id=tenant_id,
            revision=revision,
            inventory=_records("inventory", InventoryItem),
            transactions=_records("transactions", Transaction),
            customers=_records("customers", Customer),
            users=_records("users", StoreUser),
            branches=_records("branches", Branch),
            suppliers=list(_plain("suppliers", [])),
            expenses=list(_plain("expenses", [])),
            settings=dict(_plain("settings", {})),
            extra=payload,
        )

    def to_document(self) -> dict:
        doc = dict(self.extra)
        doc.update({
            "inventory": [i.to_dict() for i in self.inventory],
            "transactions": [t.to_dict() for t in self.transactions],
            "customers": [c.to_dict() for c in self.customers],
            "users": [u.to_dict() for u in self.users],
            "branches": [b.to_dict() for b in self.branches],
            "suppliers": list(self.suppliers),
            "expenses": list(self.expenses),
            "settings": dict(self.settings),
        })
        return doc

    def find_customer(self, customer_id: str | None) -> Optional[Customer]:
        if not customer_id:
            return None
        return next((c for c in self.customers if c.id == customer_id), None)

    def find_user(self, user_id: str | None) -> Optional[StoreUser]:
        if not user_id:
            return None
        return next((u for u in self.users if u.id == user_id), None)


@dataclass
class OperatorSnapshot:
    """Per-operator document: receivables and the activity feed (admin-only views)."""
    operator_id: str
    tenant_id: str
    revision: int = 0
    expenses: list[Expense] = field(default_factory=list)
    activities: list[dict] = field(default_factory=list)
    extra: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_document(cls, operator_id: str, tenant_id: str, payload: dict | None, revision: int = 0) -> "OperatorSnapshot":
        payload = dict(payload or {})
        expenses = payload.pop("expenses", None) or []
        activities = payload.pop("activities", None) or []
        return cls(
            operator_id=operator_id,
            tenant_id=tenant_id,
            revision=revision,
            expenses=[Expense.from_dict(e) for e in expenses],
            activities=list(activities),
            extra=payload,
        )

    def to_document(self) -> dict:
        doc = dict(self.extra)
        doc["expenses"] = [e.to_dict() for e in self.expenses]
        doc["activities"] = list(self.activities)
        return doc


# Collections a subscriber may ask for, mapped to their tenant-document key
TENANT_COLLECTIONS = {
    "inventory": InventoryItem,
    "transactions": Transaction,
    "customers": Customer,
    "users": StoreUser,
    "branches": Branch,
}
# Collections partitioned by branchId (subject to branch filters)
BRANCH_PARTITIONED_COLLECTIONS = frozenset({"inventory", "transactions"})
