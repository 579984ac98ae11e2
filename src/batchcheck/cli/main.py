from __future__ import annotations

import argparse
import json
import mimetypes
import os
import sys
from typing import Optional, Sequence

from ..config import load_db_path
from ..domain.batch_format import describe_format, matches
from ..errors import BatchCheckError
from ..logging import get_logger
from ..paths import expand_abs
from ..productdb import ProductDatabase, ValidationService
from ..productdb.parser import parse_product_payload

LOG = get_logger("cli-main")


def _open_db(ns: argparse.Namespace) -> ProductDatabase:
    root = os.getcwd()
    db_path = ns.db_path or load_db_path(root)
    return ProductDatabase(root_dir=root, db_path=expand_abs(db_path) if db_path else None)


def _read_image(path: str) -> tuple[bytes, str]:
    mime, _ = mimetypes.guess_type(path)
    with open(expand_abs(path), "rb") as f:
        return f.read(), mime or "application/octet-stream"


def _login(db: ProductDatabase, username: str, password: Optional[str]):
    password = password or os.environ.get("BATCHCHECK_PASSWORD")
    user = db.find_user_by_credentials(username, password or "")
    if user is None:
        LOG.error("Invalid username or password.")
    return user


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _check(ns: argparse.Namespace) -> int:
    for line in describe_format(ns.format):
        LOG.info(f"token {line}")
    all_ok = True
    for candidate in ns.candidates:
        ok = matches(candidate, ns.format)
        all_ok = all_ok and ok
        print(f"{'VALID  ' if ok else 'INVALID'} {candidate!r}")
    return 0 if all_ok else 1


def _init(ns: argparse.Namespace) -> int:
    svc = ValidationService(_open_db(ns))
    path = svc.init_database(seed=not ns.no_seed)
    LOG.info(f"Batch check DB ready at: {path}")
    print(path)
    return 0


def _validate(ns: argparse.Namespace) -> int:
    db = _open_db(ns)
    user = _login(db, ns.username, ns.password)
    if user is None:
        return 2
    svc = ValidationService(db)
    try:
        if ns.manual_barcode:
            if not ns.manual_batch:
                LOG.error("--manual-batch is required together with --manual-barcode")
                return 2
            outcome = svc.validate_manual(ns.manual_barcode, ns.manual_batch, user)
        else:
            if not (ns.barcode_image and ns.batch_image):
                LOG.error("Provide --barcode-image and --batch-image, or --manual-barcode/--manual-batch")
                return 2
            barcode, product = svc.identify_product(*_read_image(ns.barcode_image))
            LOG.info(f"Found product {product.product_name!r} (format {product.batch_number_format!r})")
            image, mime = _read_image(ns.batch_image)
            outcome = svc.validate_batch(image, mime, barcode, user)
    except BatchCheckError as e:
        LOG.error(str(e))
        return 1
    _print_json(outcome.as_dict())
    return 0 if outcome.record.is_valid else 3


def _products_list(ns: argparse.Namespace) -> int:
    db = _open_db(ns)
    _print_json([p.as_dict() for p in db.search_products(ns.search)])
    return 0


def _products_add(ns: argparse.Namespace) -> int:
    db = _open_db(ns)
    try:
        payload = parse_product_payload(
            {
                "product_name": ns.name,
                "batch_number_format": ns.format,
                "barcode": ns.barcode,
                "production_date": ns.production_date,
            }
        )
    except BatchCheckError as e:
        LOG.error(str(e))
        return 2
    _print_json(db.add_product(payload).as_dict())
    return 0


def _products_delete(ns: argparse.Namespace) -> int:
    db = _open_db(ns)
    if not db.delete_product(ns.product_id):
        LOG.error(f"No product with id {ns.product_id}")
        return 1
    return 0


def _users_add(ns: argparse.Namespace) -> int:
    db = _open_db(ns)
    try:
        user = db.upsert_user(ns.username, ns.password, ns.role)
    except ValueError as e:
        LOG.error(str(e))
        return 2
    _print_json(user.as_dict())
    return 0


def _history(ns: argparse.Namespace) -> int:
    db = _open_db(ns)
    user_id = None
    if ns.username:
        found = [u for u in db.list_users() if u.username == ns.username]
        if not found:
            LOG.error(f"Unknown user {ns.username!r}")
            return 1
        user_id = found[0].user_id
    _print_json([r.as_dict() for r in db.list_history(user_id=user_id)])
    return 0


def _serve(ns: argparse.Namespace) -> int:
    from ..productdb.frontend import create_app
    import uvicorn

    allow_origins = ns.allow_origins
    if allow_origins and len(allow_origins) == 1 and allow_origins[0] == "*":
        allow_origins = ["*"]

    root = os.getcwd()
    db_path = ns.db_path or load_db_path(root)
    app = create_app(
        root_dir=root,
        db_path=expand_abs(db_path) if db_path else None,
        allow_origins=allow_origins,
    )
    uvicorn.run(app, host=ns.host, port=ns.port, log_level=ns.log_level)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.debug(f"CLI invoked with arguments: {provided}")

    parser = argparse.ArgumentParser(
        prog="batchcheck",
        description="Check product batch codes against their registered batch number format.",
    )
    parser.add_argument("--db-path", help="SQLite file (default: var/batchcheck/batchcheck.sqlite3 under the project root)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init = subparsers.add_parser("init", help="Create the database and seed accounts/products")
    init.add_argument("--no-seed", action="store_true", help="Only ensure the schema")
    init.set_defaults(handler=_init)

    check = subparsers.add_parser("check", help="Match batch codes against a format string (no database)")
    check.add_argument("--format", required=True, help='Batch format, e.g. "HH:MM NNS11"')
    check.add_argument("candidates", nargs="+", help="Batch codes to test")
    check.set_defaults(handler=_check)

    validate = subparsers.add_parser("validate", help="Run the barcode + batch code validation")
    validate.add_argument("--username", required=True)
    validate.add_argument("--password", help="Defaults to env BATCHCHECK_PASSWORD")
    validate.add_argument("--barcode-image", help="Package photo showing the barcode")
    validate.add_argument("--batch-image", help="Package photo showing the batch code")
    validate.add_argument("--manual-barcode", help="Typed barcode (skips image extraction)")
    validate.add_argument("--manual-batch", help="Typed batch code")
    validate.set_defaults(handler=_validate)

    products = subparsers.add_parser("products", help="Product catalog utilities")
    products_sub = products.add_subparsers(dest="products_cmd", required=True)
    p_list = products_sub.add_parser("list", help="List products (optionally filtered)")
    p_list.add_argument("--search")
    p_list.set_defaults(handler=_products_list)
    p_add = products_sub.add_parser("add", help="Register a product")
    p_add.add_argument("--name", required=True)
    p_add.add_argument("--format", required=True)
    p_add.add_argument("--barcode")
    p_add.add_argument("--production-date", help="YYYY-MM-DD (default: today)")
    p_add.set_defaults(handler=_products_add)
    p_del = products_sub.add_parser("delete", help="Delete a product by id")
    p_del.add_argument("product_id", type=int)
    p_del.set_defaults(handler=_products_delete)

    users = subparsers.add_parser("users", help="Account utilities")
    users_sub = users.add_subparsers(dest="users_cmd", required=True)
    u_add = users_sub.add_parser("add", help="Create a user or reset password/role")
    u_add.add_argument("--username", required=True)
    u_add.add_argument("--password", required=True)
    u_add.add_argument("--role", choices=["admin", "staff"], default="staff")
    u_add.set_defaults(handler=_users_add)

    hist = subparsers.add_parser("history", help="Print validation history, newest first")
    hist.add_argument("--username", help="Only records of this user")
    hist.set_defaults(handler=_history)

    serve = subparsers.add_parser("serve", help="Run the JSON API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8001)
    serve.add_argument("--log-level", default="info")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    serve.set_defaults(handler=_serve)

    args = parser.parse_args(provided)
    code = args.handler(args)
    LOG.debug(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
