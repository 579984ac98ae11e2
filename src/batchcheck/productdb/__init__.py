"""Product catalog, credential store and validation history.

Modules:
- db: SQLite location, schema and CRUD helpers
- parser: validation of product forms, manual entries and uploaded images
- extraction: vision model client reading barcodes and batch codes
- service: the two-step validation workflow
- frontend: Starlette JSON API
"""

from .db import ProductDatabase
from .service import ValidationService
from .frontend.app import create_app

__all__ = [
    "ProductDatabase",
    "ValidationService",
    "create_app",
]
