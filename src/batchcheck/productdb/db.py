from __future__ import annotations

import hashlib
import hmac
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..domain.models import Product, User, ValidationRecord
from ..logging import get_logger
from ..paths import find_project_root, var_dir
from .constants import (
    PASSWORD_HASH_ITERATIONS,
    ROLE_CHOICES,
    VALIDATION_METHOD_CHOICES,
)


LOG = get_logger("productdb-db")

DEFAULT_DB_FOLDER = "batchcheck"
DEFAULT_DB_FILENAME = "batchcheck.sqlite3"

ROLE_ENUM_SQL = ", ".join(f"'{value}'" for value in ROLE_CHOICES)
METHOD_ENUM_SQL = ", ".join(f"'{value}'" for value in VALIDATION_METHOD_CHOICES)


SCHEMA_SQL = f"""
PRAGMA foreign_keys = ON;

-- 1) Credential store
CREATE TABLE IF NOT EXISTS users (
  user_id        INTEGER PRIMARY KEY,
  username       TEXT NOT NULL UNIQUE,
  password_hash  TEXT NOT NULL,
  role           TEXT NOT NULL CHECK (role IN ({ROLE_ENUM_SQL})),
  created_at     TEXT DEFAULT (datetime('now'))
);

-- 2) Product catalog
CREATE TABLE IF NOT EXISTS products (
  product_id           INTEGER PRIMARY KEY,
  product_name         TEXT NOT NULL,
  batch_number_format  TEXT NOT NULL CHECK (length(batch_number_format) > 0),
  barcode              TEXT,
  production_date      TEXT NOT NULL,      -- "YYYY-MM-DD"
  created_at           TEXT DEFAULT (datetime('now'))
);

-- 3) Validation history (append-only)
CREATE TABLE IF NOT EXISTS history (
  record_id                  INTEGER PRIMARY KEY,
  user_id                    INTEGER REFERENCES users(user_id) ON DELETE SET NULL,
  product_name               TEXT,
  extracted_barcode          TEXT NOT NULL DEFAULT '',
  extracted_batch            TEXT NOT NULL DEFAULT '',
  batch_format               TEXT,             -- format in effect when validated
  is_valid                   INTEGER NOT NULL CHECK (is_valid IN (0, 1)),
  validation_method          TEXT NOT NULL CHECK (validation_method IN ({METHOD_ENUM_SQL})),
  image_path                 TEXT,
  extracted_production_date  TEXT,
  extracted_expiry_date      TEXT,
  extracted_price            TEXT,
  timestamp                  TEXT NOT NULL     -- UTC ISO-8601
);

CREATE INDEX IF NOT EXISTS idx_products_barcode ON products(barcode);
CREATE INDEX IF NOT EXISTS idx_history_user_ts  ON history(user_id, timestamp);
"""

_TABLES = ("users", "products", "history")


def hash_password(password: str, *, salt: Optional[bytes] = None) -> str:
    salt = salt or os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PASSWORD_HASH_ITERATIONS)
    return f"pbkdf2_sha256${PASSWORD_HASH_ITERATIONS}${salt.hex()}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        scheme, iterations, salt_hex, digest_hex = stored.split("$")
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt_hex), int(iterations))
    return hmac.compare_digest(digest.hex(), digest_hex)


def _user_from_row(row: sqlite3.Row) -> User:
    return User(user_id=row["user_id"], username=row["username"], role=row["role"])


def _product_from_row(row: sqlite3.Row) -> Product:
    return Product(
        product_id=row["product_id"],
        product_name=row["product_name"],
        batch_number_format=row["batch_number_format"],
        barcode=row["barcode"],
        production_date=row["production_date"],
        created_at=row["created_at"],
    )


def _record_from_row(row: sqlite3.Row) -> ValidationRecord:
    return ValidationRecord(
        record_id=row["record_id"],
        user_id=row["user_id"],
        extracted_batch=row["extracted_batch"],
        extracted_barcode=row["extracted_barcode"],
        is_valid=bool(row["is_valid"]),
        validation_method=row["validation_method"],
        timestamp=row["timestamp"],
        product_name=row["product_name"],
        batch_format=row["batch_format"],
        image_path=row["image_path"],
        extracted_production_date=row["extracted_production_date"],
        extracted_expiry_date=row["extracted_expiry_date"],
        extracted_price=row["extracted_price"],
    )


class ProductDatabase:
    """SQLite-backed store for users, products and validation history.

    - Places DB under `<repo-root>/var/batchcheck/batchcheck.sqlite3` unless
      `db_path` is given.
    - Ensures schema on first use.
    - Provides a context-managed connection method.
    """

    def __init__(self, root_dir: Optional[str] = None, *, db_path: Optional[str] = None) -> None:
        self.root_dir = find_project_root(root_dir)
        if db_path:
            self.db_path = os.path.abspath(db_path)
            os.makedirs(os.path.dirname(self.db_path), exist_ok=True)
        else:
            db_folder = os.path.join(var_dir(self.root_dir), DEFAULT_DB_FOLDER)
            os.makedirs(db_folder, exist_ok=True)
            self.db_path = os.path.join(db_folder, DEFAULT_DB_FILENAME)
        LOG.info(f"Batch check DB path: {self.db_path}")
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute("PRAGMA journal_mode=WAL;")
                cur.execute("PRAGMA synchronous=NORMAL;")
            except sqlite3.DatabaseError as e:
                LOG.debug(f"Could not switch journal mode: {e}")
            LOG.debug("Ensuring batch check DB schema is present")
            cur.executescript(SCHEMA_SQL)
            conn.commit()

    # ---------------- users ----------------
    def list_users(self) -> List[User]:
        with self.connect() as conn:
            rows = conn.execute("SELECT user_id, username, role FROM users ORDER BY user_id;").fetchall()
        return [_user_from_row(r) for r in rows]

    def get_user(self, user_id: int) -> Optional[User]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT user_id, username, role FROM users WHERE user_id = ?;", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def find_user_by_credentials(self, username: str, password: str) -> Optional[User]:
        if not username or not password:
            return None
        with self.connect() as conn:
            row = conn.execute(
                "SELECT user_id, username, role, password_hash FROM users WHERE username = ?;",
                (username,),
            ).fetchone()
        if row is None or not verify_password(password, row["password_hash"]):
            LOG.debug(f"Credential check failed for username={username!r}")
            return None
        return _user_from_row(row)

    def upsert_user(self, username: str, password: str, role: str) -> User:
        """Create the user or overwrite password and role of an existing username."""
        if role not in ROLE_CHOICES:
            raise ValueError(f"role must be one of {ROLE_CHOICES}")
        if not username or not password:
            raise ValueError("username and password are required")
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO users (username, password_hash, role) VALUES (?, ?, ?)
                ON CONFLICT(username) DO UPDATE SET password_hash = excluded.password_hash,
                                                    role = excluded.role;
                """,
                (username, hash_password(password), role),
            )
            conn.commit()
            row = cur.execute(
                "SELECT user_id, username, role FROM users WHERE username = ?;", (username,)
            ).fetchone()
        return _user_from_row(row)

    def seed_users(self, users: Iterable[Dict[str, str]]) -> int:
        count = 0
        for entry in users:
            self.upsert_user(entry["username"], entry["password"], entry["role"])
            count += 1
        LOG.info(f"Seeded {count} user account(s)")
        return count

    # ---------------- products ----------------
    def list_products(self) -> List[Product]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM products ORDER BY product_id DESC;").fetchall()
        return [_product_from_row(r) for r in rows]

    def search_products(self, query: Optional[str]) -> List[Product]:
        """Case-insensitive substring search over name and batch format."""
        q = (query or "").strip().lower()
        if not q:
            return self.list_products()
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM products
                WHERE instr(lower(product_name), ?) > 0 OR instr(lower(batch_number_format), ?) > 0
                ORDER BY product_id DESC;
                """,
                (q, q),
            ).fetchall()
        LOG.debug(f"Product search {q!r} returned {len(rows)} row(s)")
        return [_product_from_row(r) for r in rows]

    def get_product(self, product_id: int) -> Optional[Product]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM products WHERE product_id = ?;", (product_id,)).fetchone()
        return _product_from_row(row) if row else None

    def find_product_by_barcode(self, barcode: Optional[str]) -> Optional[Product]:
        if not barcode:
            return None
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM products WHERE barcode = ? ORDER BY product_id DESC LIMIT 1;",
                (barcode,),
            ).fetchone()
        return _product_from_row(row) if row else None

    def _has_product(self, product_name: Optional[str], batch_number_format: Optional[str]) -> bool:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM products WHERE product_name = ? AND batch_number_format = ? LIMIT 1;",
                (product_name, batch_number_format),
            ).fetchone()
        return row is not None

    def add_product(self, product: Dict[str, Any]) -> Product:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO products (product_name, batch_number_format, barcode, production_date)
                VALUES (?, ?, ?, ?);
                """,
                (
                    product["product_name"],
                    product["batch_number_format"],
                    product.get("barcode"),
                    product["production_date"],
                ),
            )
            conn.commit()
            product_id = cur.lastrowid
        LOG.info(f"Added product_id={product_id} name={product['product_name']!r}")
        return self.get_product(product_id)

    def update_product(self, product_id: int, product: Dict[str, Any]) -> Optional[Product]:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE products
                SET product_name = ?, batch_number_format = ?, barcode = ?, production_date = ?
                WHERE product_id = ?;
                """,
                (
                    product["product_name"],
                    product["batch_number_format"],
                    product.get("barcode"),
                    product["production_date"],
                    product_id,
                ),
            )
            conn.commit()
            if cur.rowcount == 0:
                return None
        LOG.info(f"Updated product_id={product_id}")
        return self.get_product(product_id)

    def delete_product(self, product_id: int) -> bool:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM products WHERE product_id = ?;", (product_id,))
            conn.commit()
            deleted = cur.rowcount > 0
        if deleted:
            LOG.info(f"Deleted product_id={product_id}")
        return deleted

    def seed_products(self, products: Iterable[Dict[str, Any]]) -> int:
        """Insert seed products that are not in the catalog yet.

        An entry with a barcode is known when any product carries that
        barcode. An entry without one is known when a product with the same
        name and batch format exists. Products added or edited through the
        app are never overwritten.
        """
        inserted = 0
        for entry in products:
            barcode = entry.get("barcode")
            if barcode:
                if self.find_product_by_barcode(barcode) is not None:
                    continue
            elif self._has_product(entry.get("product_name"), entry.get("batch_number_format")):
                continue
            self.add_product(entry)
            inserted += 1
        LOG.info(f"Seeded {inserted} product(s)")
        return inserted

    # ---------------- history ----------------
    def add_history_record(self, record: ValidationRecord) -> ValidationRecord:
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO history (
                  user_id, product_name, extracted_barcode, extracted_batch, batch_format,
                  is_valid, validation_method, image_path, extracted_production_date,
                  extracted_expiry_date, extracted_price, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    record.user_id,
                    record.product_name,
                    record.extracted_barcode,
                    record.extracted_batch,
                    record.batch_format,
                    1 if record.is_valid else 0,
                    record.validation_method,
                    record.image_path,
                    record.extracted_production_date,
                    record.extracted_expiry_date,
                    record.extracted_price,
                    record.timestamp,
                ),
            )
            conn.commit()
            record.record_id = cur.lastrowid
        LOG.debug(f"Inserted history record_id={record.record_id} valid={record.is_valid}")
        return record

    def list_history(self, user_id: Optional[int] = None) -> List[ValidationRecord]:
        """Return records newest first, optionally restricted to one user."""
        sql = "SELECT * FROM history"
        params: List[Any] = []
        if user_id is not None:
            sql += " WHERE user_id = ?"
            params.append(user_id)
        sql += " ORDER BY timestamp DESC, record_id DESC;"
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_record_from_row(r) for r in rows]

    def fetch_table_rows(self, table: str, *, limit: int = 100, offset: int = 0) -> Dict[str, Any]:
        if table not in _TABLES:
            raise ValueError(f"Unknown table: {table}")
        with self.connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM {table};").fetchone()[0]
            rows = conn.execute(f"SELECT * FROM {table} LIMIT ? OFFSET ?;", (limit, offset)).fetchall()
        items = [dict(r) for r in rows]
        if table == "users":
            for item in items:
                item.pop("password_hash", None)
        return {"table": table, "total": total, "items": items}
