from __future__ import annotations

from datetime import date
from typing import Any, Dict, Optional

from ..errors import ImageRejectedError, PayloadValidationError
from ..logging import get_logger
from .constants import IMAGE_MIME_TYPES, MAX_IMAGE_BYTES


LOG = get_logger("productdb-parser")


def _norm_s(s: Any) -> Optional[str]:
    return str(s).strip() if isinstance(s, str) and s.strip() else None


def parse_product_payload(payload: Any) -> Dict[str, Any]:
    """Validate a product form submission and return a DB-ready dict.

    - product_name, batch_number_format: required non-empty strings
    - barcode: optional; blank becomes None
    - production_date: ISO date; missing or blank defaults to today
    """
    if not isinstance(payload, dict):
        raise PayloadValidationError("Product payload must be a JSON object")

    name = _norm_s(payload.get("product_name"))
    if not name:
        raise PayloadValidationError("product_name required")

    # The format is kept verbatim: spaces inside it are tokens.
    fmt = payload.get("batch_number_format")
    if not isinstance(fmt, str) or not fmt.strip():
        raise PayloadValidationError("batch_number_format required")

    barcode = _norm_s(payload.get("barcode"))
    if barcode is None:
        LOG.warning(f"Product {name!r} saved without a barcode; it cannot be found by scanning")

    raw_date = _norm_s(payload.get("production_date"))
    if raw_date is None:
        production_date = date.today().isoformat()
    else:
        try:
            production_date = date.fromisoformat(raw_date).isoformat()
        except ValueError:
            raise PayloadValidationError("production_date must be an ISO date (YYYY-MM-DD)")

    return {
        "product_name": name,
        "batch_number_format": fmt,
        "barcode": barcode,
        "production_date": production_date,
    }


def parse_manual_payload(payload: Any) -> Dict[str, str]:
    if not isinstance(payload, dict):
        raise PayloadValidationError("Manual entry must be a JSON object")
    barcode = _norm_s(payload.get("barcode"))
    batch_code = _norm_s(payload.get("batch_code"))
    if not barcode:
        raise PayloadValidationError("barcode required")
    if not batch_code:
        raise PayloadValidationError("batch_code required")
    return {"barcode": barcode, "batch_code": batch_code}


def check_image(data: bytes, mime_type: Optional[str]) -> str:
    """Reject unsupported or oversized uploads; return the file extension to store under."""
    mime = (mime_type or "").split(";")[0].strip().lower()
    if mime not in IMAGE_MIME_TYPES:
        raise ImageRejectedError(f"Unsupported image type {mime or 'unknown'!r}; use PNG, JPG or GIF.")
    if not data:
        raise ImageRejectedError("Please select or capture an image.")
    if len(data) > MAX_IMAGE_BYTES:
        raise ImageRejectedError("File size must be less than 4MB.")
    return IMAGE_MIME_TYPES[mime]
