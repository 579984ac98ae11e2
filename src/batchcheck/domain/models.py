from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ValidationStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class User:
    user_id: Optional[int]
    username: str
    role: str  # admin | staff

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Product:
    product_id: Optional[int]
    product_name: str
    batch_number_format: str
    barcode: Optional[str]
    production_date: str  # YYYY-MM-DD
    created_at: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BatchReading:
    """Fields read from the batch code area of a package image."""

    batch_number: str = ""
    production_date: Optional[str] = None
    expiry_date: Optional[str] = None
    price: Optional[str] = None


@dataclass
class ValidationRecord:
    record_id: Optional[int]
    user_id: int
    extracted_batch: str
    extracted_barcode: str
    is_valid: bool
    validation_method: str  # ocr | manual
    timestamp: str
    product_name: Optional[str] = None
    batch_format: Optional[str] = None
    image_path: Optional[str] = None
    extracted_production_date: Optional[str] = None
    extracted_expiry_date: Optional[str] = None
    extracted_price: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ValidationOutcome:
    status: ValidationStatus
    record: ValidationRecord
    product: Product

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "is_valid": self.record.is_valid,
            "record": self.record.as_dict(),
            "product": self.product.as_dict(),
        }
