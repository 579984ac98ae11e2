from __future__ import annotations

from pathlib import Path

import pytest

from batchcheck.domain.models import ValidationRecord
from batchcheck.productdb import ProductDatabase


def _db(root: Path) -> ProductDatabase:
    (root / "README.md").write_text("test marker", encoding="utf-8")
    return ProductDatabase(root_dir=str(root))


def _product(name: str, fmt: str, barcode: str | None = None) -> dict:
    return {
        "product_name": name,
        "batch_number_format": fmt,
        "barcode": barcode,
        "production_date": "2024-05-01",
    }


def _record(user_id: int, *, ts: str, valid: bool = True) -> ValidationRecord:
    return ValidationRecord(
        record_id=None,
        user_id=user_id,
        extracted_batch="08:30 42B11",
        extracted_barcode="8901234567890",
        is_valid=valid,
        validation_method="manual",
        timestamp=ts,
        product_name="Mango Juice",
        batch_format="HH:MM NNS11",
    )


def test_database_lives_under_var_of_project_root(tmp_path: Path) -> None:
    db = _db(tmp_path)
    assert Path(db.db_path) == tmp_path / "var" / "batchcheck" / "batchcheck.sqlite3"
    assert Path(db.db_path).exists()


def test_explicit_db_path_is_used(tmp_path: Path) -> None:
    target = tmp_path / "data" / "custom.sqlite3"
    db = ProductDatabase(root_dir=str(tmp_path), db_path=str(target))
    assert Path(db.db_path) == target
    assert target.exists()


def test_credentials_are_hashed_and_checked(tmp_path: Path) -> None:
    db = _db(tmp_path)
    user = db.upsert_user("alice", "s3cret", "staff")

    assert db.find_user_by_credentials("alice", "s3cret") == user
    assert db.find_user_by_credentials("alice", "wrong") is None
    assert db.find_user_by_credentials("bob", "s3cret") is None
    assert db.find_user_by_credentials("alice", "") is None

    with db.connect() as conn:
        stored = conn.execute("SELECT password_hash FROM users WHERE username = 'alice';").fetchone()[0]
    assert "s3cret" not in stored
    assert stored.startswith("pbkdf2_sha256$")


def test_seed_users_overwrites_matching_usernames_and_keeps_others(tmp_path: Path) -> None:
    db = _db(tmp_path)
    db.upsert_user("admin", "old", "staff")
    db.upsert_user("carol", "pw", "staff")

    db.seed_users([{"username": "admin", "password": "new", "role": "admin"}])

    admin = db.find_user_by_credentials("admin", "new")
    assert admin is not None and admin.role == "admin"
    assert db.find_user_by_credentials("admin", "old") is None
    assert {u.username for u in db.list_users()} == {"admin", "carol"}


def test_invalid_role_is_rejected(tmp_path: Path) -> None:
    db = _db(tmp_path)
    with pytest.raises(ValueError):
        db.upsert_user("eve", "pw", "root")


def test_product_crud_round(tmp_path: Path) -> None:
    db = _db(tmp_path)
    product = db.add_product(_product("Mango Juice", "HH:MM NNS11", "8901234567890"))
    assert product.product_id is not None

    updated = db.update_product(product.product_id, _product("Mango Juice 1L", "NNS11", "8901234567890"))
    assert updated is not None
    assert updated.product_name == "Mango Juice 1L"
    assert updated.batch_number_format == "NNS11"

    assert db.update_product(9999, _product("x", "N")) is None
    assert db.delete_product(product.product_id) is True
    assert db.delete_product(product.product_id) is False
    assert db.list_products() == []


def test_find_by_barcode_prefers_newest_and_ignores_empty(tmp_path: Path) -> None:
    db = _db(tmp_path)
    db.add_product(_product("Old Label", "NNN", "111"))
    newer = db.add_product(_product("New Label", "NNS", "111"))
    db.add_product(_product("No Barcode", "N"))

    assert db.find_product_by_barcode("111") == newer
    assert db.find_product_by_barcode("") is None
    assert db.find_product_by_barcode(None) is None
    assert db.find_product_by_barcode("222") is None


def test_search_matches_name_or_format_case_insensitively(tmp_path: Path) -> None:
    db = _db(tmp_path)
    db.add_product(_product("Mango Juice", "HH:MM NNS11", "1"))
    db.add_product(_product("Tomato Ketchup", "LOT NNNN", "2"))

    assert [p.product_name for p in db.search_products("mango")] == ["Mango Juice"]
    assert [p.product_name for p in db.search_products("lot")] == ["Tomato Ketchup"]
    assert [p.product_name for p in db.search_products("hh:mm")] == ["Mango Juice"]
    assert len(db.search_products("")) == 2
    assert len(db.search_products(None)) == 2
    assert db.search_products("%") == []


def test_seed_products_skips_known_barcodes(tmp_path: Path) -> None:
    db = _db(tmp_path)
    edited = db.add_product(_product("Edited Locally", "NNN", "111"))

    inserted = db.seed_products([_product("Seeded", "SSS", "111"), _product("Fresh", "N", "222")])

    assert inserted == 1
    assert db.find_product_by_barcode("111") == edited
    assert db.find_product_by_barcode("222").product_name == "Fresh"


def test_seed_products_without_barcode_are_inserted_once(tmp_path: Path) -> None:
    db = _db(tmp_path)
    seed = [_product("Loose Tea", "NNN"), _product("Loose Tea", "HH:MM")]

    assert db.seed_products(seed) == 2
    assert db.seed_products(seed) == 0
    assert db.seed_products([_product("Loose Tea", "NNN", "333")]) == 1

    assert sorted(p.batch_number_format for p in db.list_products()) == ["HH:MM", "NNN", "NNN"]


def test_history_is_newest_first_and_filterable(tmp_path: Path) -> None:
    db = _db(tmp_path)
    alice = db.upsert_user("alice", "pw", "staff")
    bob = db.upsert_user("bob", "pw", "staff")

    db.add_history_record(_record(alice.user_id, ts="2024-05-01T10:00:00Z"))
    db.add_history_record(_record(bob.user_id, ts="2024-05-01T11:00:00Z", valid=False))
    last = db.add_history_record(_record(alice.user_id, ts="2024-05-01T12:00:00Z"))

    everything = db.list_history()
    assert [r.timestamp for r in everything] == [
        "2024-05-01T12:00:00Z",
        "2024-05-01T11:00:00Z",
        "2024-05-01T10:00:00Z",
    ]
    assert everything[0].record_id == last.record_id
    assert everything[1].is_valid is False

    only_alice = db.list_history(user_id=alice.user_id)
    assert len(only_alice) == 2
    assert all(r.user_id == alice.user_id for r in only_alice)


def test_table_rows_hide_password_hashes(tmp_path: Path) -> None:
    db = _db(tmp_path)
    db.upsert_user("alice", "pw", "staff")

    payload = db.fetch_table_rows("users")
    assert payload["total"] == 1
    assert "password_hash" not in payload["items"][0]

    with pytest.raises(ValueError):
        db.fetch_table_rows("sqlite_master")
