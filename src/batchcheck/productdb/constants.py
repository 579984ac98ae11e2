from __future__ import annotations

from typing import Dict, Tuple

ROLE_ADMIN = "admin"
ROLE_STAFF = "staff"
ROLE_CHOICES: Tuple[str, ...] = (ROLE_ADMIN, ROLE_STAFF)

METHOD_OCR = "ocr"
METHOD_MANUAL = "manual"
VALIDATION_METHOD_CHOICES: Tuple[str, ...] = (METHOD_OCR, METHOD_MANUAL)

MAX_IMAGE_BYTES = 4 * 1024 * 1024

# MIME type -> file extension for stored package images.
IMAGE_MIME_TYPES: Dict[str, str] = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
}

PASSWORD_HASH_ITERATIONS = 120_000
