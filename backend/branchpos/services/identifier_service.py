# Overview: Service-layer helpers for record ids and scanned-code lookup.

"""
Identifier Service

Record ids are generated client-side style, without a central sequence:
    <PREFIX>-<epoch millis>-<9 random base36 chars>
e.g. TXN-1718000000000-k3j9x0a1b. Ids are unique with overwhelming
probability but carry no idempotency meaning; a resubmitted checkout gets a
new id.

LOOKUP PRIORITY for scanned codes: BARCODE > SKU > ID.
Soft-deleted items are never returned by lookups.
"""

from __future__ import annotations

import secrets
import string
from typing import Iterable

from branchpos.time_utils import epoch_millis
from ..schemas import InventoryItem

_ALPHABET = string.digits + string.ascii_lowercase
SUFFIX_LENGTH = 9


def _random_suffix(length: int = SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def new_record_id(prefix: str, millis: int | None = None) -> str:
    if millis is None:
        millis = epoch_millis()
    return f"{prefix}-{millis}-{_random_suffix()}"


def new_transaction_id(millis: int | None = None) -> str:
    return new_record_id("TXN", millis)


def normalize_identifier(value: str) -> str:
    """Normalize to uppercase, no spaces."""
    return str(value or "").upper().strip().replace(" ", "")


def lookup_item(items: Iterable[InventoryItem], code: str) -> InventoryItem | None:
    """
    Find an item by scanned code with deterministic priority.

    Raises ValueError when two live items share the matched code.
    """
    normalized = normalize_identifier(code)
    if not normalized:
        return None

    live = [i for i in items if not i.is_deleted]
    for attr in ("barcode", "sku", "id"):
        matches = [i for i in live if normalize_identifier(getattr(i, attr) or "") == normalized]
        if len(matches) > 1:
            raise ValueError(f"Ambiguous {attr} {code!r}: {len(matches)} items match")
        if matches:
            return matches[0]
    return None
