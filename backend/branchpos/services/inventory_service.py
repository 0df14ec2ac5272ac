# Overview: Service-layer operations for branch-partitioned inventory; pure list transforms before write-back.

"""
Branch-Partitioned Inventory Invariants (authoritative)

Partitioning:
- Every InventoryItem belongs to exactly one branch via branch_id.
- A branch only ever rewrites its own slice. Before a whole-document write
  the inventory is rebuilt as:
      merged = other_branches(snapshot.inventory) + branch_items
  so concurrent checkouts in different branches never clobber each other.
- Items with no branch_id are excluded from every branch-scoped view
  (fail-closed) and survive every merge untouched. Their presence means the
  migration guard must run.

Quantities:
- quantity >= 0 after any decrement; a decrement that would go negative is
  rejected, never clamped.
- Goods receipt increments; soft delete sets deleted_at and never removes.

Purity:
- The list transforms take and return lists of records. They never mutate
  their inputs and never touch the store.
- receive_branch_stock / delete_branch_item (bottom) are the persisted
  goods-receipt and delete flows: read, transform the acting branch slice,
  merge, one write.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterable

from branchpos.time_utils import utcnow
from ..schemas import CartLine, InventoryItem
from ..validation import ValidationError, coerce_int, coerce_money
from . import activity_service
from .document_store_service import read_tenant_snapshot, write_tenant_snapshot
from .tenant_service import require_branch


def filter_by_branch(
    items: Iterable[InventoryItem],
    branch_id: str | None,
    *,
    include_deleted: bool = False,
) -> list[InventoryItem]:
    """Items owned by branch_id. Items without a branch never match."""
    if not branch_id:
        return []
    return [
        i for i in items
        if i.branch_id is not None
        and i.branch_id == branch_id
        and (include_deleted or not i.is_deleted)
    ]


def other_branches(items: Iterable[InventoryItem], branch_id: str) -> list[InventoryItem]:
    """Everything the acting branch does not own, including unassigned items."""
    return [i for i in items if i.branch_id != branch_id]


def unassigned_items(items: Iterable[InventoryItem]) -> list[InventoryItem]:
    return [i for i in items if i.branch_id is None]


def _cart_quantities(cart: Iterable[CartLine]) -> "OrderedDict[str, int]":
    totals: OrderedDict[str, int] = OrderedDict()
    for line in cart:
        totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
    return totals


def check_stock(branch_items: Iterable[InventoryItem], cart: Iterable[CartLine]) -> None:
    """
    Raise ValidationError listing every cart line the branch cannot cover.
    Lines whose product is not in the branch are reported as unavailable.
    """
    by_id = {i.id: i for i in branch_items if not i.is_deleted}
    insufficient = []
    for product_id, qty in _cart_quantities(cart).items():
        item = by_id.get(product_id)
        on_hand = item.quantity if item else 0
        if on_hand < qty:
            insufficient.append({
                "product_id": product_id,
                "requested_quantity": qty,
                "on_hand": on_hand,
            })
    if insufficient:
        raise ValidationError("Insufficient stock", details={"items": insufficient})


def decrement_branch_stock(
    branch_items: Iterable[InventoryItem],
    cart: Iterable[CartLine],
) -> list[InventoryItem]:
    """
    Apply the cart to the branch's items and return the new branch slice.
    Items not in the cart are returned unchanged, in their original order.
    """
    branch_items = list(branch_items)
    cart = list(cart)
    check_stock(branch_items, cart)

    wanted = _cart_quantities(cart)
    return [
        replace(item, quantity=item.quantity - wanted[item.id]) if item.id in wanted else item
        for item in branch_items
    ]


def merge_branch_inventory(
    snapshot_inventory: Iterable[InventoryItem],
    branch_id: str,
    branch_items: Iterable[InventoryItem],
) -> list[InventoryItem]:
    """
    Rebuild the full inventory for write-back:
    other branches' items (unchanged) + the acting branch's updated items.
    """
    if not branch_id:
        raise ValidationError("branch_id is required to merge inventory")

    branch_items = list(branch_items)
    foreign = [i.id for i in branch_items if i.branch_id != branch_id]
    if foreign:
        raise ValidationError(
            "Refusing to write items owned by another branch",
            details={"branch_id": branch_id, "item_ids": foreign},
        )
    return other_branches(snapshot_inventory, branch_id) + branch_items


def receive_stock(
    branch_items: Iterable[InventoryItem],
    item_id: str,
    quantity: int,
    *,
    cost_price=None,
) -> list[InventoryItem]:
    """Goods receipt: increment one of the branch's items."""
    if quantity <= 0:
        raise ValidationError("quantity must be > 0 for a goods receipt")

    branch_items = list(branch_items)
    found = False
    out = []
    for item in branch_items:
        if item.id == item_id and not item.is_deleted:
            found = True
            changes = {"quantity": item.quantity + quantity}
            if cost_price is not None:
                changes["cost_price"] = cost_price
            item = replace(item, **changes)
        out.append(item)
    if not found:
        raise ValidationError("Item not found in branch", details={"item_id": item_id})
    return out


def soft_delete_item(
    branch_items: Iterable[InventoryItem],
    item_id: str,
    *,
    now: datetime | None = None,
) -> list[InventoryItem]:
    now = now or utcnow()
    branch_items = list(branch_items)
    if not any(i.id == item_id for i in branch_items):
        raise ValidationError("Item not found in branch", details={"item_id": item_id})
    return [
        replace(i, deleted_at=i.deleted_at or now) if i.id == item_id else i
        for i in branch_items
    ]


def low_stock_items(items: Iterable[InventoryItem]) -> list[InventoryItem]:
    """Live items at or below their reorder level."""
    return [i for i in items if not i.is_deleted and i.quantity <= i.reorder_level]


def expiring_items(
    items: Iterable[InventoryItem],
    days: int = 30,
    *,
    now: datetime | None = None,
) -> list[InventoryItem]:
    now = now or utcnow()
    cutoff = now + timedelta(days=days)
    return sorted(
        (i for i in items if not i.is_deleted and i.expiry_date is not None and i.expiry_date <= cutoff),
        key=lambda i: i.expiry_date,
    )


# =============================================================================
# PERSISTED FLOWS (acting branch only)
# =============================================================================

def _write_branch_slice(snapshot, branch_id: str, updated_branch: list[InventoryItem]) -> int:
    snapshot.inventory = merge_branch_inventory(snapshot.inventory, branch_id, updated_branch)
    return write_tenant_snapshot(snapshot, changed=("inventory",))


def receive_branch_stock(ctx, item_id: str, quantity, *, cost_price=None) -> InventoryItem:
    quantity = coerce_int("quantity", quantity)
    if cost_price is not None:
        cost_price = coerce_money("cost_price", cost_price)

    branch_id = require_branch(ctx)
    snapshot = read_tenant_snapshot(ctx.tenant_id)
    branch_items = filter_by_branch(snapshot.inventory, branch_id, include_deleted=True)
    updated = receive_stock(branch_items, item_id, quantity, cost_price=cost_price)
    _write_branch_slice(snapshot, branch_id, updated)

    item = next(i for i in updated if i.id == item_id)
    activity_service.log_committed_activity(
        ctx,
        activity_service.STOCK_ADJUSTED,
        f"Received {quantity} x {item.name or item.id}",
        details={"itemId": item.id, "quantityDelta": quantity, "quantity": item.quantity, "branchId": branch_id},
    )
    return item


def delete_branch_item(ctx, item_id: str) -> InventoryItem:
    """Soft delete: the item stays in the document with deletedAt set."""
    branch_id = require_branch(ctx)
    snapshot = read_tenant_snapshot(ctx.tenant_id)
    branch_items = filter_by_branch(snapshot.inventory, branch_id, include_deleted=True)
    updated = soft_delete_item(branch_items, item_id)
    _write_branch_slice(snapshot, branch_id, updated)

    item = next(i for i in updated if i.id == item_id)
    activity_service.log_committed_activity(
        ctx,
        activity_service.STOCK_ADJUSTED,
        f"Deleted {item.name or item.id}",
        details={"itemId": item.id, "deleted": True, "branchId": branch_id},
    )
    return item
