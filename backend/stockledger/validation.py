from __future__ import annotations

from datetime import datetime
from typing import Any

from stockledger.time_utils import parse_iso_datetime
from stockledger.services.errors import LedgerValidationError


MAX_PAGE_SIZE = 500


def coerce_int(value: Any, name: str, *, required: bool = True) -> int | None:
    """
    Strict integer coercion for query args and JSON fields.

    Accepts ints (not bools) and plain digit strings; rejects floats,
    decimals and scientific notation.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise LedgerValidationError(f"{name} is required")
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if "e" in stripped.lower():
            raise LedgerValidationError(f"{name} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise LedgerValidationError(f"{name} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise LedgerValidationError(f"{name} must be an integer")
    if isinstance(value, float):
        raise LedgerValidationError(f"{name} must be an integer, not a decimal")
    raise LedgerValidationError(f"{name} must be an integer")


def coerce_datetime(value: Any, name: str) -> datetime | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise LedgerValidationError(f"{name} must be an ISO-8601 string")
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise LedgerValidationError(f"{name} must be an ISO-8601 datetime")


def pagination(args) -> tuple[int, int]:
    limit = coerce_int(args.get("limit"), "limit", required=False)
    offset = coerce_int(args.get("offset"), "offset", required=False)
    limit = 100 if limit is None else limit
    offset = 0 if offset is None else offset
    if limit <= 0 or limit > MAX_PAGE_SIZE:
        raise LedgerValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if offset < 0:
        raise LedgerValidationError("offset cannot be negative")
    return limit, offset


def optional_text(payload: dict, name: str, *, max_length: int = 255) -> str | None:
    value = payload.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise LedgerValidationError(f"{name} must be a string")
    value = value.strip()
    if len(value) > max_length:
        raise LedgerValidationError(f"{name} must be at most {max_length} characters")
    return value or None
