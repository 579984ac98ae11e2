from __future__ import annotations

import base64
import binascii
from typing import Dict, List, Optional

from starlette.applications import Starlette
from starlette.authentication import (
    AuthCredentials,
    AuthenticationBackend,
    AuthenticationError,
    BaseUser,
)
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException
from starlette.middleware.authentication import AuthenticationMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import HTTPConnection, Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ...domain.batch_format import describe_format, matches
from ...domain.models import User
from ...errors import (
    BatchCheckError,
    ExtractionFailure,
    ImageRejectedError,
    LookupFailure,
    PayloadValidationError,
    PermissionDenied,
)
from ...logging import get_logger
from ..db import ProductDatabase
from ..extraction import VisionExtractor
from ..parser import parse_manual_payload, parse_product_payload
from ..service import ValidationService


LOG = get_logger("productdb-frontend")

_ERROR_STATUS = {
    ExtractionFailure: 422,
    LookupFailure: 404,
    ImageRejectedError: 400,
    PayloadValidationError: 400,
    PermissionDenied: 403,
}


class AuthenticatedUser(BaseUser):
    def __init__(self, user: User) -> None:
        self.user = user

    @property
    def is_authenticated(self) -> bool:
        return True

    @property
    def display_name(self) -> str:
        return self.user.username


class BasicAuthBackend(AuthenticationBackend):
    """Checks HTTP Basic credentials against the users table on every request."""

    def __init__(self, db: ProductDatabase) -> None:
        self.db = db

    async def authenticate(self, conn: HTTPConnection):
        header = conn.headers.get("Authorization")
        if not header:
            return None
        scheme, _, encoded = header.partition(" ")
        if scheme.lower() != "basic":
            return None
        try:
            decoded = base64.b64decode(encoded).decode("utf-8")
        except (ValueError, UnicodeDecodeError, binascii.Error) as exc:
            raise AuthenticationError("Invalid basic auth credentials") from exc
        username, _, password = decoded.partition(":")
        # PBKDF2 verification is slow; keep it off the event loop.
        user = await run_in_threadpool(self.db.find_user_by_credentials, username, password)
        if user is None:
            raise AuthenticationError("Invalid username or password.")
        return AuthCredentials(["authenticated", user.role]), AuthenticatedUser(user)


def _auth_error(_: HTTPConnection, exc: Exception) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=401, headers={"WWW-Authenticate": "Basic"})


def _current_user(request: Request) -> User:
    if not request.user.is_authenticated:
        raise HTTPException(status_code=401, detail="Login required", headers={"WWW-Authenticate": "Basic"})
    return request.user.user


def _require_admin(request: Request) -> User:
    user = _current_user(request)
    if not user.is_admin:
        raise PermissionDenied("Administrator access is required to make changes.")
    return user


async def _read_json(request: Request):
    try:
        return await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON") from exc


def create_app(
    root_dir: Optional[str] = None,
    *,
    db_path: Optional[str] = None,
    extractor: Optional[VisionExtractor] = None,
    allow_origins: Optional[List[str]] = None,
    seed: bool = True,
) -> Starlette:
    """Create a Starlette app exposing the catalog, validation and history API."""

    db = ProductDatabase(root_dir=root_dir, db_path=db_path)
    service = ValidationService(db, extractor)
    service.init_database(seed=seed)

    def _usernames() -> Dict[int, str]:
        return {u.user_id: u.username for u in db.list_users()}

    async def health(_: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "db_path": db.db_path})

    async def login(request: Request) -> JSONResponse:
        user = _current_user(request)
        LOG.info("User %r logged in (role=%s)", user.username, user.role)
        return JSONResponse(user.as_dict())

    async def products(request: Request) -> JSONResponse:
        _current_user(request)
        items = db.search_products(request.query_params.get("search"))
        return JSONResponse({"items": [p.as_dict() for p in items], "total": len(items)})

    async def create_product(request: Request) -> JSONResponse:
        _require_admin(request)
        payload = parse_product_payload(await _read_json(request))
        product = db.add_product(payload)
        return JSONResponse(product.as_dict(), status_code=201)

    async def update_product(request: Request) -> JSONResponse:
        _require_admin(request)
        product_id = request.path_params["product_id"]
        payload = parse_product_payload(await _read_json(request))
        product = db.update_product(product_id, payload)
        if product is None:
            raise HTTPException(status_code=404, detail="Product not found")
        return JSONResponse(product.as_dict())

    async def delete_product(request: Request) -> JSONResponse:
        _require_admin(request)
        if not db.delete_product(request.path_params["product_id"]):
            raise HTTPException(status_code=404, detail="Product not found")
        return JSONResponse({"deleted": True})

    async def validate_barcode(request: Request) -> JSONResponse:
        _current_user(request)
        image = await request.body()
        barcode, product = await run_in_threadpool(
            service.identify_product, image, request.headers.get("content-type")
        )
        return JSONResponse({"barcode": barcode, "product": product.as_dict()})

    async def validate_batch(request: Request) -> JSONResponse:
        user = _current_user(request)
        barcode = request.query_params.get("barcode") or ""
        if not barcode.strip():
            raise HTTPException(status_code=400, detail="barcode query parameter required")
        image = await request.body()
        outcome = await run_in_threadpool(
            service.validate_batch, image, request.headers.get("content-type"), barcode, user
        )
        return JSONResponse(outcome.as_dict())

    async def validate_manual(request: Request) -> JSONResponse:
        user = _current_user(request)
        entry = parse_manual_payload(await _read_json(request))
        outcome = service.validate_manual(entry["barcode"], entry["batch_code"], user)
        return JSONResponse(outcome.as_dict())

    async def history(request: Request) -> JSONResponse:
        user = _current_user(request)
        records = [r.as_dict() for r in service.history_for(user)]
        if user.is_admin:
            names = _usernames()
            for r in records:
                r["username"] = names.get(r["user_id"], "Unknown User")
        return JSONResponse({"items": records, "total": len(records)})

    async def admin_log(request: Request) -> JSONResponse:
        _require_admin(request)
        names = _usernames()
        records = []
        for r in db.list_history():
            item = r.as_dict()
            item["username"] = names.get(r.user_id, "Unknown User")
            records.append(item)
        return JSONResponse({"items": records, "total": len(records)})

    async def table_rows(request: Request) -> JSONResponse:
        _require_admin(request)
        try:
            payload = db.fetch_table_rows(request.path_params["table"])
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse(payload)

    async def check_format(request: Request) -> JSONResponse:
        qp = request.query_params
        fmt = qp.get("format") or ""
        candidate = qp.get("candidate") or ""
        return JSONResponse(
            {
                "format": fmt,
                "candidate": candidate,
                "matches": matches(candidate, fmt),
                "tokens": describe_format(fmt),
            }
        )

    async def api_only(_: Request) -> JSONResponse:
        return JSONResponse({"detail": "Batch check API is running. See /api/health."})

    async def domain_error(_: Request, exc: Exception) -> JSONResponse:
        status = next((code for cls, code in _ERROR_STATUS.items() if isinstance(exc, cls)), 400)
        LOG.warning("Request failed (%s): %s", type(exc).__name__, exc)
        return JSONResponse({"detail": str(exc)}, status_code=status)

    async def http_error(_: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse({"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)

    routes = [
        Route("/", api_only, methods=["GET"]),
        Route("/api/health", health, methods=["GET"]),
        Route("/api/login", login, methods=["POST"]),
        Route("/api/products", products, methods=["GET"]),
        Route("/api/products", create_product, methods=["POST"]),
        Route("/api/products/{product_id:int}", update_product, methods=["PUT"]),
        Route("/api/products/{product_id:int}", delete_product, methods=["DELETE"]),
        Route("/api/validate/barcode", validate_barcode, methods=["POST"]),
        Route("/api/validate/batch", validate_batch, methods=["POST"]),
        Route("/api/validate/manual", validate_manual, methods=["POST"]),
        Route("/api/history", history, methods=["GET"]),
        Route("/api/admin/log", admin_log, methods=["GET"]),
        Route("/api/admin/tables/{table:str}", table_rows, methods=["GET"]),
        Route("/api/formats/check", check_format, methods=["GET"]),
    ]

    app = Starlette(
        debug=False,
        routes=routes,
        exception_handlers={BatchCheckError: domain_error, HTTPException: http_error},
    )
    app.add_middleware(AuthenticationMiddleware, backend=BasicAuthBackend(db), on_error=_auth_error)

    origins = allow_origins or ["http://localhost:5173", "http://127.0.0.1:5173"]
    if "*" in origins:
        cors_allow_origins = ["*"]
    else:
        cors_allow_origins = origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.service = service
    return app


__all__ = ["create_app"]
