from __future__ import annotations

import hashlib
import os
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from ..config import load_seed_products, load_seed_users
from ..domain.batch_format import matches
from ..domain.models import (
    BatchReading,
    Product,
    User,
    ValidationOutcome,
    ValidationRecord,
    ValidationStatus,
)
from ..errors import ExtractionFailure, LookupFailure, PayloadValidationError
from ..logging import get_logger
from ..paths import uploads_dir
from .constants import METHOD_MANUAL, METHOD_OCR
from .db import ProductDatabase
from .extraction import VisionExtractor
from .parser import check_image, parse_product_payload


LOG = get_logger("productdb-service")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


class ValidationService:
    """Two-step package check: identify the product, then validate its batch code.

    Each call is independent; nothing is retried. Failures surface as
    ExtractionFailure / LookupFailure so the caller can ask for a new photo.
    """

    def __init__(self, db: Optional[ProductDatabase] = None, extractor: Optional[VisionExtractor] = None) -> None:
        self.db = db or ProductDatabase()
        self._extractor = extractor

    @property
    def extractor(self) -> VisionExtractor:
        # Built on first use so catalog-only callers never need model credentials.
        if self._extractor is None:
            self._extractor = VisionExtractor(script_dir=self.db.root_dir)
        return self._extractor

    def init_database(self, *, seed: bool = True) -> str:
        """Ensure the database exists, seed accounts and products, return its path."""
        if seed:
            self.db.seed_users(load_seed_users(self.db.root_dir))
            products = []
            for entry in load_seed_products(self.db.root_dir):
                try:
                    products.append(parse_product_payload(entry))
                except PayloadValidationError as exc:
                    LOG.warning(f"Skipping seed product {entry.get('product_name')!r}: {exc}")
            self.db.seed_products(products)
        LOG.info("Batch check database initialized.")
        return self.db.db_path

    # ---------------- step 1 ----------------
    def identify_product(self, image: bytes, mime_type: str) -> Tuple[str, Product]:
        check_image(image, mime_type)
        barcode = self.extractor.extract_barcode(image, mime_type)
        if not barcode:
            raise ExtractionFailure("Could not read barcode from the image.")
        return barcode, self._lookup(barcode)

    # ---------------- step 2 ----------------
    def validate_batch(self, image: bytes, mime_type: str, barcode: str, user: User) -> ValidationOutcome:
        ext = check_image(image, mime_type)
        product = self._lookup(barcode)
        reading = self.extractor.extract_batch(image, mime_type)
        if not reading.batch_number:
            raise ExtractionFailure("Could not read batch code from the image.")
        image_path = self._store_image(image, ext)
        return self._record(product, barcode, reading, user, method=METHOD_OCR, image_path=image_path)

    def validate_manual(self, barcode: str, batch_code: str, user: User) -> ValidationOutcome:
        product = self._lookup(barcode)
        reading = BatchReading(batch_number=batch_code)
        return self._record(product, barcode, reading, user, method=METHOD_MANUAL)

    def history_for(self, user: User) -> List[ValidationRecord]:
        """Admins see every record, staff only their own."""
        if user.is_admin:
            return self.db.list_history()
        return self.db.list_history(user_id=user.user_id)

    # ---------------- helpers ----------------
    def _lookup(self, barcode: str) -> Product:
        barcode = (barcode or "").strip()
        product = self.db.find_product_by_barcode(barcode)
        if product is None:
            raise LookupFailure(f'Product with barcode "{barcode}" not found in the database.')
        return product

    def _store_image(self, image: bytes, ext: str) -> str:
        folder = uploads_dir(self.db.root_dir)
        os.makedirs(folder, exist_ok=True)
        path = os.path.join(folder, hashlib.sha256(image).hexdigest() + ext)
        if not os.path.exists(path):
            with open(path, "wb") as f:
                f.write(image)
        return path

    def _record(
        self,
        product: Product,
        barcode: str,
        reading: BatchReading,
        user: User,
        *,
        method: str,
        image_path: Optional[str] = None,
    ) -> ValidationOutcome:
        is_valid = matches(reading.batch_number, product.batch_number_format)
        record = ValidationRecord(
            record_id=None,
            user_id=user.user_id,
            extracted_batch=reading.batch_number,
            extracted_barcode=barcode.strip(),
            is_valid=is_valid,
            validation_method=method,
            timestamp=_utc_now_iso(),
            product_name=product.product_name,
            batch_format=product.batch_number_format,
            image_path=image_path,
            extracted_production_date=reading.production_date,
            extracted_expiry_date=reading.expiry_date,
            extracted_price=reading.price,
        )
        self.db.add_history_record(record)
        LOG.info(
            "Validated batch %r against %r for product_id=%s: %s",
            reading.batch_number,
            product.batch_number_format,
            product.product_id,
            "valid" if is_valid else "invalid",
        )
        return ValidationOutcome(status=ValidationStatus.SUCCESS, record=record, product=product)
