"""FastAPI app for the modelforge runtime schema engine."""

from __future__ import annotations

import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import logging
import time

from access_policy import authorize
from app.auth import JwtAuthMiddleware
from app.db import close_pool, get_db_stats, init_pool, ping, reset_db_stats
from app.records import DbRecordStore, RecordService
from app.schema_db import DbSchemaBackend
from app.schema_sync import SchemaSynthesizer
from app.stores import MemoryDatabase, MemoryRecordStore, MemorySchemaBackend
from definition_store import DefinitionStore
from forge.definition_hash import definition_hash
from forge.errors import BadRequestError, ForbiddenError, ForgeError, UnauthorizedError, trim_db_message
from model_registry import DefinitionWatcher, ModelRegistry


logger = logging.getLogger("forge")
logging.basicConfig(level=logging.INFO)

USE_DB = os.getenv("USE_DB", "").strip() == "1"
DISABLE_AUTH = os.getenv("FORGE_DISABLE_AUTH", "").strip().lower() in ("1", "true", "yes")
JWT_SECRET = os.getenv("FORGE_JWT_SECRET", "").strip() or None
JWT_JWKS_URL = os.getenv("FORGE_JWT_JWKS_URL", "").strip() or None
JWT_AUDIENCE = os.getenv("FORGE_JWT_AUDIENCE", "").strip() or None
ADMIN_ROLE = os.getenv("FORGE_ADMIN_ROLE", "").strip() or "Admin"
PUBLISH_ROLES = {r.strip() for r in os.getenv("FORGE_PUBLISH_ROLES", "").split(",") if r.strip()}
WATCH_ENABLED = os.getenv("FORGE_WATCH", "1").strip() != "0"
REQ_SLOW_MS = float(os.getenv("FORGE_REQ_SLOW_MS", "250"))
logger.info("auth_disabled=%s use_db=%s jwks=%s", DISABLE_AUTH, USE_DB, bool(JWT_JWKS_URL))

_CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("FORGE_CORS_ORIGINS", "").split(",")
    if origin.strip()
}

definitions: DefinitionStore
registry: ModelRegistry
synthesizer: SchemaSynthesizer
records: RecordService
watcher: DefinitionWatcher


def configure(models_dir: str | Path | None = None) -> None:
    """(Re)build the registry, backends and services; the watcher is not started here."""
    global definitions, registry, synthesizer, records, watcher
    definitions = DefinitionStore(models_dir)
    registry = ModelRegistry(definitions)
    if USE_DB:
        schema_backend = DbSchemaBackend()
        record_store = DbRecordStore()
    else:
        database = MemoryDatabase()
        schema_backend = MemorySchemaBackend(database)
        record_store = MemoryRecordStore(database)
    synthesizer = SchemaSynthesizer(registry, definitions, schema_backend)
    records = RecordService(registry, record_store)
    watcher = DefinitionWatcher(definitions, registry)
    definitions.ensure_dir()
    loaded = registry.load_all()
    logger.info("registry_ready models_dir=%s loaded=%s", definitions.root, loaded)


configure()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if USE_DB:
        init_pool()
    if WATCH_ENABLED:
        watcher.start()
    try:
        yield
    finally:
        watcher.stop()
        if USE_DB:
            close_pool()


app = FastAPI(title="modelforge", lifespan=lifespan)


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    auth_ms = getattr(request.state, "auth_ms", 0.0)
    db_stats = get_db_stats()
    db_ms = db_stats.get("total_ms", 0.0)
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    logger.info(
        "%s %s %s route=%s total_ms=%.1f auth_ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        total_ms,
        auth_ms,
        db_ms,
        db_stats.get("queries", 0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s route=%s total_ms=%.1f db_ms=%.1f status=%s",
            request.method,
            request.url.path,
            route_name,
            total_ms,
            db_ms,
            response.status_code,
        )
    response.headers["X-Req-MS"] = f"{total_ms:.1f}"
    response.headers["X-DB-MS"] = f"{db_ms:.1f}"
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=r"http://localhost:\d+|http://127\.0\.0\.1:\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
if not DISABLE_AUTH and not (JWT_SECRET or JWT_JWKS_URL):
    raise RuntimeError("FORGE_JWT_SECRET or FORGE_JWT_JWKS_URL is required for auth")
app.add_middleware(JwtAuthMiddleware, secret=JWT_SECRET, jwks_url=JWT_JWKS_URL, audience=JWT_AUDIENCE)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


@app.exception_handler(ForgeError)
async def forge_error_handler(request: Request, exc: ForgeError):
    if exc.status >= 500:
        logger.error("request_failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    return _error_response(exc.code, exc.message, exc.path, exc.detail, status=exc.status)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": trim_db_message(exc)}, status=500)


def _principal(request: Request) -> dict | None:
    return getattr(request.state, "principal", None)


def _require_principal(request: Request) -> dict:
    principal = _principal(request)
    if not isinstance(principal, dict):
        raise UnauthorizedError("Authentication required.", path="Authorization")
    return principal


def _require_publisher(request: Request) -> dict:
    principal = _require_principal(request)
    if PUBLISH_ROLES and principal.get("role") not in PUBLISH_ROLES:
        raise ForbiddenError(
            f"Your role ('{principal.get('role')}') may not change model definitions.",
            code="PUBLISH_FORBIDDEN",
        )
    return principal


def _parse_record_id(raw: str) -> int:
    text = str(raw).strip()
    if not text.isdigit():
        raise BadRequestError("Invalid record ID.", code="INVALID_ID", path="id")
    return int(text)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as exc:
        raise BadRequestError("Request body must be valid JSON.", code="INVALID_JSON") from exc
    if not isinstance(body, dict):
        raise BadRequestError("Request body must be a JSON object.", code="INVALID_JSON")
    return body


def _authorize(request: Request, model_name: str, record_id: int | None = None) -> None:
    decision = authorize(
        _principal(request),
        request.method,
        model_name,
        record_id,
        registry,
        records.find_one,
        admin_role=ADMIN_ROLE,
    )
    logger.debug("access_granted model=%s method=%s reason=%s", model_name, request.method, decision["reason"])


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.get("/ops/db_ping")
async def db_ping(request: Request):
    _require_principal(request)
    if not USE_DB:
        return _error_response("DB_DISABLED", "Database backend is not enabled", status=400)
    elapsed_ms = ping()
    return {"ok": True, "ms": round(elapsed_ms, 2)}


@app.get("/model-definitions/list")
async def list_model_names(request: Request):
    _require_principal(request)
    return _ok_response({"models": registry.list()})


@app.get("/model-definitions")
async def list_model_definitions(request: Request):
    _require_principal(request)
    return _ok_response({"models": registry.list_all()})


@app.get("/model-definitions/{name}")
async def get_model_definition(name: str, request: Request):
    _require_principal(request)
    model = registry.get(name)
    return _ok_response({"model": model, "definition_hash": definition_hash(model)})


@app.post("/model-definitions/publish")
async def publish_model_definition(request: Request):
    principal = _require_publisher(request)
    body = await _json_body(request)
    definition = body.get("definition") if isinstance(body.get("definition"), dict) else body
    result = synthesizer.publish(definition)
    logger.info(
        "model_published name=%s created=%s changes=%s actor=%s",
        result["model"]["name"],
        result["created"],
        len(result["changes"]),
        principal.get("id"),
    )
    warnings = result.pop("warnings")
    return _ok_response(result, warnings=warnings, status=201 if result["created"] else 200)


@app.delete("/model-definitions/{name}")
async def delete_model_definition(name: str, request: Request):
    principal = _require_publisher(request)
    result = synthesizer.delete(name)
    logger.info("model_deleted name=%s actor=%s", name, principal.get("id"))
    return _ok_response(result)


@app.post("/api/{model}")
async def create_record(model: str, request: Request):
    _authorize(request, model)
    body = await _json_body(request)
    principal = _principal(request) or {}
    record = records.create(model, body, owner_id=principal.get("id"))
    return _ok_response({"record": record}, status=201)


@app.get("/api/{model}")
async def list_records(
    model: str,
    request: Request,
    page: str | None = None,
    limit: str | None = None,
    search: str | None = None,
):
    _authorize(request, model)
    return _ok_response(records.list(model, page=page, limit=limit, search=search))


@app.get("/api/{model}/{record_id}")
async def get_record(model: str, record_id: str, request: Request):
    rid = _parse_record_id(record_id)
    _authorize(request, model, rid)
    return _ok_response({"record": records.find_one(model, rid)})


@app.put("/api/{model}/{record_id}")
@app.patch("/api/{model}/{record_id}")
async def update_record(model: str, record_id: str, request: Request):
    rid = _parse_record_id(record_id)
    _authorize(request, model, rid)
    body = await _json_body(request)
    return _ok_response({"record": records.update(model, rid, body)})


@app.delete("/api/{model}/{record_id}")
async def delete_record(model: str, record_id: str, request: Request):
    rid = _parse_record_id(record_id)
    _authorize(request, model, rid)
    return _ok_response(records.delete(model, rid))
