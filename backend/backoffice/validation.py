from __future__ import annotations

from datetime import datetime
from typing import Any

from .errors import ValidationError
from .time_utils import parse_iso_datetime


# Maximum money value: 9,999,999.99 (999,999,999 cents)
MAX_CENTS = 999_999_999


def coerce_int(value: Any, field: str, *, required: bool = True, minimum: int | None = None) -> int | None:
    """
    Strict integer coercion for JSON payloads and query strings.

    Accepts ints and plain digit strings. Rejects bools, floats, decimals and
    scientific notation.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required")
        return None

    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    elif isinstance(value, str):
        stripped = value.strip()
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}", {field: result})
    return result


def coerce_positive_int(value: Any, field: str) -> int:
    return coerce_int(value, field, minimum=1)


def coerce_cents(value: Any, field: str, *, required: bool = True) -> int | None:
    result = coerce_int(value, field, required=required, minimum=0)
    if result is not None and result > MAX_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_CENTS} cents")
    return result


def coerce_datetime(value: Any, field: str) -> datetime | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO-8601 string")
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", {field: value})


def coerce_items(value: Any, *, price_field: str | None = None) -> list[dict]:
    """Normalize a list of {product_id, quantity[, price_field]} dicts."""
    if not isinstance(value, list) or not value:
        raise ValidationError("items must be a non-empty list")
    items = []
    for index, raw in enumerate(value):
        if not isinstance(raw, dict):
            raise ValidationError("each item must be an object", {"index": index})
        item = {
            "product_id": coerce_positive_int(raw.get("product_id"), f"items[{index}].product_id"),
            "quantity": coerce_positive_int(raw.get("quantity"), f"items[{index}].quantity"),
        }
        if price_field is not None:
            item[price_field] = coerce_cents(raw.get(price_field), f"items[{index}].{price_field}")
        items.append(item)
    return items


def pagination_args(args, *, default_limit: int = 20, max_limit: int = 100) -> tuple[int, int]:
    page = coerce_int(args.get("page"), "page", required=False, minimum=1) or 1
    limit = coerce_int(args.get("limit"), "limit", required=False, minimum=1) or default_limit
    return page, min(limit, max_limit)


def page_payload(items: list[dict], total: int, page: int, limit: int) -> dict:
    return {
        "items": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit if limit else 0,
        },
    }
