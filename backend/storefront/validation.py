from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any


# Maximum money amount accepted from any client or gateway: 99,999,999.99
MAX_AMOUNT = Decimal("99999999.99")

CENT = Decimal("0.01")


class ValidationError(ValueError):
    """400-level input problem."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code}


def require_payload(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def coerce_int(value: Any, field: str, *, allow_none: bool = False) -> int | None:
    """
    Strict integer coercion for JSON input.

    Rejects booleans, floats, scientific notation and decimal strings so
    that "2.5" or true never silently become a quantity.
    """
    if value is None:
        if allow_none:
            return None
        raise ValidationError(f"{field} is required")

    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value

    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")

    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")

    raise ValidationError(f"{field} must be an integer")


def coerce_positive_int(value: Any, field: str) -> int:
    number = coerce_int(value, field)
    if number <= 0:
        raise ValidationError(f"{field} must be > 0")
    return number


def coerce_amount(value: Any, field: str = "amount") -> Decimal:
    """Parse a money amount into a 2-place Decimal."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    try:
        # str() first so floats like 900.1 don't carry binary noise
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a decimal amount")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a decimal amount")
    if amount < 0:
        raise ValidationError(f"{field} must be >= 0")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{field} cannot exceed {MAX_AMOUNT}")
    return amount.quantize(CENT)


def coerce_text(value: Any, field: str, *, max_length: int = 255, required: bool = False) -> str | None:
    if value is None:
        if required:
            raise ValidationError(f"{field} is required")
        return None
    text = str(value).strip()
    if required and not text:
        raise ValidationError(f"{field} cannot be blank")
    if len(text) > max_length:
        raise ValidationError(f"{field} exceeds max length {max_length}")
    return text or None


def parse_cart_items(raw_items: Any) -> list[dict]:
    """
    Shape-check the checkout `items` array.

    Only structure is validated here; product/variant existence and quantity
    rules are enforced by the order service inside the transaction. Any other
    keys (price, name, ...) are dropped: the server prices every line.
    """
    if raw_items is None:
        return []
    if not isinstance(raw_items, list):
        raise ValidationError("items must be a list")
    items = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        items.append({
            "product_id": raw.get("product_id"),
            "variant_id": raw.get("variant_id"),
            "quantity": raw.get("quantity"),
        })
    return items
