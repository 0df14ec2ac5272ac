from __future__ import annotations
from datetime import datetime
from decimal import Decimal, InvalidOperation
from branchpos.time_utils import parse_iso_datetime

from dataclasses import dataclass
from typing import Any


# Maximum price: KES 99,999,999.99
# This prevents nonsensical prices reaching the ledger
MAX_PRICE = Decimal("99999999.99")

FIELD_INT = "int"
FIELD_MONEY = "money"
FIELD_DECIMAL = "decimal"
FIELD_TEXT = "text"
FIELD_BOOL = "bool"
FIELD_DATETIME = "datetime"
FIELD_LIST = "list"


class ValidationError(ValueError):
    """400-level input problem (bad payload, insufficient stock, discount out of range)."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate SKU within a branch)."""


@dataclass(frozen=True)
class PayloadPolicy:
    """
    Central policy layer for JSON request bodies:
    - fields: allowlist of writable field -> field kind (security boundary)
    - required: fields required for POST
    - nullable: fields that may be explicitly null
    """
    fields: dict[str, str]
    required: frozenset[str] = frozenset()
    nullable: frozenset[str] = frozenset()


def coerce_int(key: str, value: Any) -> int:
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise ValidationError(f"{key} must be an integer")


def coerce_decimal(key: str, value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a number")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        # str() keeps the shortest repr, so 0.1 stays 0.1
        result = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            raise ValidationError(f"{key} must be a number")
        try:
            result = Decimal(text)
        except InvalidOperation:
            raise ValidationError(f"{key} must be a number")
    else:
        raise ValidationError(f"{key} must be a number")
    if not result.is_finite():
        raise ValidationError(f"{key} must be a finite number")
    return result


def coerce_money(key: str, value: Any) -> Decimal:
    amount = coerce_decimal(key, value)
    if amount < 0:
        raise ValidationError(f"{key} must be >= 0")
    if amount > MAX_PRICE:
        raise ValidationError(f"{key} cannot exceed {MAX_PRICE:,}")
    return amount


def coerce_text(key: str, value: Any) -> str:
    if isinstance(value, (dict, list)):
        raise ValidationError(f"{key} must be a string")
    return str(value).strip()


def coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def coerce_datetime(key: str, value: Any) -> datetime:
    if isinstance(value, datetime):
        return parse_iso_datetime(value)
    if isinstance(value, str):
        try:
            dt = parse_iso_datetime(value)
        except ValueError:
            raise ValidationError(f"{key} must be an ISO-8601 datetime")
        if dt is None:
            raise ValidationError(f"{key} must be an ISO-8601 datetime")
        return dt
    raise ValidationError(f"{key} must be a datetime")


_COERCERS = {
    FIELD_INT: coerce_int,
    FIELD_MONEY: coerce_money,
    FIELD_DECIMAL: coerce_decimal,
    FIELD_TEXT: coerce_text,
    FIELD_BOOL: coerce_bool,
    FIELD_DATETIME: coerce_datetime,
}


def _coerce_value(kind: str, key: str, value: Any):
    if kind == FIELD_LIST:
        if not isinstance(value, list):
            raise ValidationError(f"{key} must be a list")
        return value
    return _COERCERS[kind](key, value)


def validate_payload(*, payload: Any, policy: PayloadPolicy) -> dict:
    """
    Validates + normalizes incoming JSON against the policy allowlist.
    Returns a cleaned dict with only allowed fields, coerced to their kinds.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    missing = sorted(f for f in policy.required if f not in payload)
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    for k in payload.keys():
        if k not in policy.fields:
            raise ValidationError(f"Field not allowed: {k}")

    cleaned: dict = {}
    for k, raw in payload.items():
        if raw is None:
            if k not in policy.nullable:
                raise ValidationError(f"{k} cannot be null")
            cleaned[k] = None
            continue

        val = _coerce_value(policy.fields[k], k, raw)
        if policy.fields[k] == FIELD_TEXT and val == "" and k in policy.required:
            raise ValidationError(f"{k} cannot be blank")
        cleaned[k] = val

    return cleaned
