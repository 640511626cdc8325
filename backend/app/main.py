import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from prometheus_client import Counter, Histogram, CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text

from .db import get_engine, init_db, upload_dir
from .errors import NotFound, register_exception_handlers
from .logging_config import log_event
from .resources import RESOURCE_TYPES, repository
from .routes import build_avatar_router, build_resource_router
from .session import router as session_router
from .storage import resolve_path


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    upload_dir().mkdir(parents=True, exist_ok=True)
    log_event("startup", upload_dir=str(upload_dir()))
    yield


openapi_tags = [
    {"name": "Health", "description": "Service status and metrics"},
    {"name": "Auth", "description": "Allow-listed sign-in and password bootstrap"},
    {"name": "Audits", "description": "Audit plan"},
    {"name": "Nonconformities", "description": "Findings raised by audits"},
    {"name": "Policies", "description": "Controlled policy documents"},
    {"name": "Guidelines", "description": "Controlled guideline documents"},
    {"name": "Templates", "description": "Controlled templates"},
    {"name": "Certificates", "description": "Certifications and their validity"},
    {"name": "Advisories", "description": "Advisories"},
    {"name": "Users", "description": "User directory (admin)"},
    {"name": "Dashboard", "description": "Summary counts"},
]

app = FastAPI(
    title="Audit Desk API",
    version="0.1.0",
    description="Audits, non-conformities and controlled documents with file attachments.",
    lifespan=lifespan,
    openapi_tags=openapi_tags,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=(os.getenv("CORS_ALLOWED_ORIGINS", "*").split(",") if os.getenv("CORS_ALLOWED_ORIGINS") else ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)

app.include_router(session_router)
for _rt in RESOURCE_TYPES.values():
    app.include_router(build_resource_router(_rt))
app.include_router(build_avatar_router(repository("users")))


# --- Request ID, metrics and access log ---
REQUEST_COUNT = Counter("auditdesk_requests_total", "HTTP requests served", labelnames=("method", "status"))
ERROR_COUNT = Counter("auditdesk_request_errors_total", "HTTP responses with status >= 400", labelnames=("method", "status"))
REQUEST_DURATION = Histogram(
    "auditdesk_request_duration_seconds",
    "HTTP request latency",
    labelnames=("method", "route", "status"),
    buckets=(0.005, 0.025, 0.1, 0.25, 0.5, 1.0, 2.5, 10.0),
)


def _observe(request: Request, status: int, started: float) -> float:
    elapsed = time.perf_counter() - started
    # Route template, not the raw path
    route = getattr(request.scope.get("route"), "path", request.url.path)
    labels = {"method": request.method, "status": str(status)}
    REQUEST_COUNT.labels(**labels).inc()
    if status >= 400:
        ERROR_COUNT.labels(**labels).inc()
    REQUEST_DURATION.labels(route=route, **labels).observe(elapsed)
    return round(elapsed * 1000.0, 2)


@app.middleware("http")
async def request_context(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = req_id
    started = time.perf_counter()
    try:
        response: Response = await call_next(request)
    except Exception as exc:
        log_event(
            "request_error",
            logging.ERROR,
            request_id=req_id,
            method=request.method,
            path=request.url.path,
            duration_ms=_observe(request, 500, started),
            error=str(exc),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    log_event(
        "request",
        request_id=req_id,
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=_observe(request, response.status_code, started),
        client_ip=request.client.host if request.client else None,
    )
    return response


# Security headers
@app.middleware("http")
async def security_headers(request: Request, call_next):
    response: Response = await call_next(request)
    if os.getenv("ENV", "dev").lower() == "prod":
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["X-Content-Type-Options"] = "nosniff"
    # No CSP on file downloads
    if "content-disposition" not in response.headers:
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    return response


@app.get("/health", tags=["Health"])
def health():
    return {"status": "ok"}


@app.get("/metrics", tags=["Health"])
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Legacy direct links to stored files
@app.get("/uploads/{file_path:path}", include_in_schema=False)
def uploaded_file(file_path: str):
    path = resolve_path(file_path)
    if path is None or not path.is_file() or path.name.startswith("."):
        raise NotFound("File not found")
    return FileResponse(str(path))


@app.get("/api/dashboard/summary", tags=["Dashboard"])
def dashboard_summary(days: int = 30):
    """Record counts plus the audit, finding and certificate figures the dashboard charts."""
    today = datetime.utcnow().date()
    horizon = today + timedelta(days=max(days, 0))
    with get_engine().connect() as conn:
        totals = {
            name: int(conn.execute(text(f"SELECT COUNT(*) FROM {rt.table.name}")).scalar_one() or 0)
            for name, rt in RESOURCE_TYPES.items()
            if name != "users"
        }
        audits_by_status = conn.execute(text("SELECT status, COUNT(*) AS c FROM audits GROUP BY status")).all()
        ncs_by_status = conn.execute(text("SELECT status, COUNT(*) AS c FROM nonconformities GROUP BY status")).all()
        overdue = conn.execute(
            text("SELECT COUNT(*) FROM nonconformities WHERE status != 'Closed' AND due_date IS NOT NULL AND due_date < :today"),
            {"today": today.isoformat()},
        ).scalar_one()
        expiring = conn.execute(
            text(
                "SELECT id, document_id, document_name, valid_through FROM certificates "
                "WHERE valid_through >= :today AND valid_through <= :horizon ORDER BY valid_through"
            ),
            {"today": today.isoformat(), "horizon": horizon.isoformat()},
        ).mappings().all()
        attachments = conn.execute(text("SELECT COUNT(*) FROM attachments")).scalar_one()
    return {
        "totals": totals,
        "audits": {"by_status": {row[0]: int(row[1]) for row in audits_by_status}},
        "nonconformities": {
            "by_status": {row[0]: int(row[1]) for row in ncs_by_status},
            "overdue": int(overdue or 0),
        },
        "certificates": {"expiring": [dict(r) for r in expiring], "days": days},
        "attachments": int(attachments or 0),
        "generated_at": datetime.utcnow().isoformat(),
    }
