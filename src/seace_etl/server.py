"""FastAPI backend for the SEACE ETL job service."""

from contextlib import contextmanager
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional
from fastapi import Body, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError
from dotenv import load_dotenv
from sse_starlette.sse import EventSourceResponse
import os
import time
import json
import logging
import uuid
from threading import RLock

from .categorizer import Categorizer, Category
from .config import SYSTEM_KEY_ENV_VARS, Settings, load_settings
from .credentials import CredentialInUse, CredentialNotFound, CredentialPool, InvalidPermutation
from .crypto import SecretCipher
from .location import LocationInferrer
from .models import (
    CredentialCreate,
    CredentialUpdate,
    CredentialUsageEntry,
    CredentialView,
    Operation,
    OperationKind,
    OperationPage,
    OperationStats,
    OperationStatus,
    ReorderRequest,
)
from .operations import AlreadyTerminal, InvalidTransition, OperationNotFound, OperationRegistry
from .publisher import ProgressPublisher
from .reaper import StaleOperationReaper, parse_interval_seconds
from .records import RecordStore
from .scraper import ProcessSource, Scraper
from .store import StateStore, build_state_store
from .workers import ClientFactory, OperationRunner

load_dotenv()

app = FastAPI(title="SEACE ETL API", version="0.1.0")


def _get_cors_origins() -> list[str]:
    """Read CORS origins from env, with local-development defaults."""
    raw = os.getenv("CORS_ALLOW_ORIGINS")
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

SETTINGS = load_settings()
REQUEST_LOG_JSON = SETTINGS.request_log_json
REQUEST_LOG_LEVEL = SETTINGS.request_log_level.upper()

logger = logging.getLogger("seace_etl.server")
logger.setLevel(getattr(logging, REQUEST_LOG_LEVEL, logging.INFO))


@dataclass
class Runtime:
    """Everything a request handler needs, built once per process."""

    settings: Settings
    store: StateStore
    registry: OperationRegistry
    pool: CredentialPool
    records: RecordStore
    publisher: ProgressPublisher
    runner: OperationRunner
    reaper: Optional[StaleOperationReaper] = None


_runtime: Optional[Runtime] = None
_runtime_lock = RLock()


def _system_key() -> Optional[str]:
    for name in SYSTEM_KEY_ENV_VARS:
        value = os.getenv(name, "").strip()
        if value:
            return value
    return None


def build_runtime(
    settings: Settings,
    client_factory: Optional[ClientFactory] = None,
    source: Optional[ProcessSource] = None,
    catalog: Optional[Mapping[str, Category]] = None,
    store: Optional[StateStore] = None,
) -> Runtime:
    """Wire stores, pool, registry and workers from settings."""
    store = store or build_state_store(
        settings.state_store_backend, settings.state_store_path, settings.state_store_sqlite_path
    )
    registry = OperationRegistry(
        store=store,
        max_history=settings.max_operation_history,
        max_messages=settings.max_operation_messages,
    )
    pool = CredentialPool(
        store=store,
        cipher=SecretCipher(settings.encryption_key),
        quota_reset_hours=settings.quota_reset_hours,
    )
    seeded = pool.ensure_system_key(_system_key())
    if seeded is not None:
        logger.info("Seeded empty credential pool with the key from the environment")
    records = RecordStore(settings.records_db_path)
    publisher = ProgressPublisher(registry)

    common: Dict[str, Any] = {
        "registry": registry,
        "pool": pool,
        "records": records,
        "settings": settings,
        "client_factory": client_factory,
    }
    workers = {
        OperationKind.SCRAPE: Scraper(source=source, **common),
        OperationKind.CATEGORIZE: Categorizer(catalog=catalog, **common),
        OperationKind.INFER_LOCATION: LocationInferrer(**common),
    }
    runner = OperationRunner(
        registry,
        workers,
        max_workers=settings.worker_pool_size,
        execute_async=settings.execute_async,
    )

    reaper = None
    if settings.reaper_enabled:
        reaper = StaleOperationReaper(
            registry,
            interval_seconds=parse_interval_seconds(settings.reaper_interval),
            max_idle_seconds=settings.reaper_max_idle_seconds,
            is_queued=runner.is_queued,
        )
    return Runtime(
        settings=settings,
        store=store,
        registry=registry,
        pool=pool,
        records=records,
        publisher=publisher,
        runner=runner,
        reaper=reaper,
    )


def configure_runtime(settings: Optional[Settings] = None, **overrides: Any) -> Runtime:
    """Replace the process runtime (used at startup and by tests)."""
    global _runtime
    runtime = build_runtime(settings or SETTINGS, **overrides)
    with _runtime_lock:
        previous = _runtime
        _runtime = runtime
    if previous is not None:
        _shutdown_runtime(previous)
    return runtime


def get_runtime() -> Runtime:
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = build_runtime(SETTINGS)
        return _runtime


def _shutdown_runtime(runtime: Runtime) -> None:
    if runtime.reaper is not None:
        runtime.reaper.stop()
    runtime.runner.shutdown(wait=False)


@contextmanager
def _translate_errors() -> Iterator[None]:
    """Map domain exceptions onto HTTP status codes."""
    try:
        yield
    except (OperationNotFound, CredentialNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except CredentialInUse as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except (InvalidTransition, AlreadyTerminal) as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except InvalidPermutation as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=json.loads(e.json())) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


def _log_request(request: Request, status_code: int, duration_ms: float, request_id: str) -> None:
    """Emit one structured log line per request."""
    payload = {
        "event": "http_request",
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 3),
        "client_ip": request.client.host if request.client else "unknown",
    }
    if REQUEST_LOG_JSON:
        logger.info(json.dumps(payload, ensure_ascii=True, sort_keys=True))
    else:
        logger.info(
            "%s %s %s %.3fms id=%s",
            payload["method"],
            payload["path"],
            payload["status_code"],
            payload["duration_ms"],
            payload["request_id"],
        )


@app.on_event("startup")
def startup_reaper() -> None:
    """Start the stale-operation reaper when enabled."""
    runtime = get_runtime()
    if runtime.reaper is not None:
        runtime.reaper.start()


@app.on_event("shutdown")
def shutdown_runtime() -> None:
    """Stop background threads cleanly."""
    with _runtime_lock:
        runtime = _runtime
    if runtime is not None:
        _shutdown_runtime(runtime)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Request id propagation and structured access logs."""
    started = time.perf_counter()
    request_id = request.headers.get("x-request-id", uuid.uuid4().hex)
    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (time.perf_counter() - started) * 1000.0
        _log_request(request, 500, duration_ms, request_id)
        raise

    duration_ms = (time.perf_counter() - started) * 1000.0
    _log_request(request, response.status_code, duration_ms, request_id)
    response.headers["X-Request-ID"] = request_id
    return response


class StartOperationResponse(BaseModel):
    operation_id: str
    status: str


class CredentialStats(BaseModel):
    credential: CredentialView
    usage: List[CredentialUsageEntry]


@app.get("/health")
def health_check():
    """Basic health endpoint for probes."""
    return {"status": "ok"}


@app.get("/health/ready")
def readiness_check(response: Response):
    """Readiness probe that validates storage dependencies."""
    runtime = get_runtime()
    checks: Dict[str, Any] = {}
    ready = True

    state_check = runtime.store.check()
    checks["state_store"] = state_check
    ready = ready and bool(state_check.get("ok"))

    try:
        checks["records"] = {"ok": True, "path": str(runtime.records.path), "count": runtime.records.count()}
    except Exception as e:
        ready = False
        checks["records"] = {"ok": False, "error": str(e)}

    active = [c for c in runtime.pool.list() if c.active]
    checks["credentials"] = {"ok": bool(active), "total": len(runtime.pool), "active": len(active)}

    if not ready:
        response.status_code = 503
        return {"status": "degraded", "checks": checks}
    return {"status": "ok", "checks": checks}


@app.get("/reaper/status")
def reaper_status():
    """Stale-operation reaper configuration and last sweep."""
    runtime = get_runtime()
    if runtime.reaper is None:
        return {"enabled": False}
    status = runtime.reaper.get_status()
    return {"enabled": True, **asdict(status)}


# Operations


@app.post("/operations/{kind}", response_model=StartOperationResponse)
def start_operation(kind: OperationKind, params: Optional[Dict[str, Any]] = Body(default=None)):
    """Validate parameters and launch a background job."""
    runtime = get_runtime()
    with _translate_errors():
        operation_id = runtime.runner.start(kind, params)
        operation = runtime.registry.get(operation_id)
    status = operation.status.value if operation.is_terminal else OperationStatus.RUNNING.value
    return StartOperationResponse(operation_id=operation_id, status=status)


@app.get("/operations", response_model=OperationPage)
def list_operations(
    kind: Optional[OperationKind] = None,
    status: Optional[OperationStatus] = None,
    operation_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
):
    """Newest-first, filterable history."""
    return get_runtime().registry.list(
        kind=kind, status=status, operation_id=operation_id, page=page, size=size
    )


@app.get("/operations/stats", response_model=OperationStats)
def operation_stats():
    return get_runtime().registry.stats()


@app.get("/operations/{operation_id}", response_model=Operation)
def get_operation(operation_id: str):
    """Current snapshot of one operation."""
    with _translate_errors():
        return get_runtime().registry.get(operation_id)


@app.get("/operations/{operation_id}/events")
async def stream_operation_events(operation_id: str, request: Request):
    """Server-sent progress events until the operation reaches a terminal state."""
    runtime = get_runtime()
    with _translate_errors():
        runtime.registry.get(operation_id)

    async def _events():
        async for event in runtime.publisher.stream(operation_id, is_disconnected=request.is_disconnected):
            yield {"event": event["event"], "data": json.dumps(event["data"], ensure_ascii=False)}

    return EventSourceResponse(_events())


# Credentials


@app.get("/credentials", response_model=List[CredentialView])
def list_credentials():
    """Masked credentials in priority order."""
    return get_runtime().pool.list()


@app.post("/credentials", response_model=CredentialView, status_code=201)
def add_credential(request: CredentialCreate):
    with _translate_errors():
        return get_runtime().pool.add(alias=request.alias, secret=request.secret, provider=request.provider)


@app.post("/credentials/reorder", response_model=List[CredentialView])
def reorder_credentials(request: ReorderRequest):
    """Priorities become the order of `ordered_ids`."""
    with _translate_errors():
        return get_runtime().pool.reorder(request.ordered_ids)


@app.put("/credentials/{credential_id}", response_model=CredentialView)
def update_credential(credential_id: int, request: CredentialUpdate):
    with _translate_errors():
        return get_runtime().pool.update(
            credential_id, alias=request.alias, secret=request.secret, active=request.active
        )


@app.delete("/credentials/{credential_id}")
def delete_credential(credential_id: int):
    with _translate_errors():
        get_runtime().pool.remove(credential_id)
    return {"status": "deleted", "id": credential_id}


@app.get("/credentials/{credential_id}/stats", response_model=CredentialStats)
def credential_stats(credential_id: int):
    pool = get_runtime().pool
    with _translate_errors():
        return CredentialStats(credential=pool.get(credential_id), usage=pool.stats(credential_id))


@app.post("/credentials/{credential_id}/reset", response_model=CredentialView)
def reset_credential(credential_id: int):
    """Zero counters and lift any quota block."""
    with _translate_errors():
        return get_runtime().pool.reset_stats(credential_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
