import time
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse

from kb_ingest.api.routes import router
from kb_ingest.core.config import settings
from kb_ingest.core.logging import clear_request_context, configure_logging, log_event, set_request_context
from kb_ingest.db.session import create_schema, get_engine

configure_logging()
app = FastAPI(title="Knowledge Base Ingestion Service API", version=settings.APP_VERSION)
app.include_router(router)


def _tenant_from_path(path: str) -> str | None:
    parts = path.strip("/").split("/")
    if len(parts) >= 3 and parts[0] == "v1" and parts[1] == "tenants":
        return parts[2]
    return None


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    tenant_id = _tenant_from_path(request.url.path)
    set_request_context(request_id=request_id, tenant_id=tenant_id)
    request.state.request_id = request_id
    request.state.tenant_id = tenant_id

    status_code = 500
    error_code = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        if status_code >= 400:
            error_code = str(status_code)
        response.headers["X-Request-ID"] = request_id
        return response
    except Exception:
        error_code = "internal_server_error"
        raise
    finally:
        log_event(
            "api.request.completed",
            payload={
                "endpoint": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "duration_ms": int((time.perf_counter() - started) * 1000),
                "error_code": error_code,
            },
        )
        clear_request_context()


@app.exception_handler(HTTPException)
async def contract_error_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)
    return await http_exception_handler(request, exc)


@app.on_event("startup")
async def _startup() -> None:
    if not settings.firecrawl_configured:
        log_event("startup.crawl_service_not_configured", level=30, payload={"firecrawl_api_url": settings.FIRECRAWL_API_URL})
    if settings.DB_AUTO_CREATE_SCHEMA:
        await create_schema(get_engine())
        log_event("startup.schema_ready", payload={"embedding_dim": settings.EMBEDDING_DIM})
    log_event("startup.completed", payload={"service_port": settings.SERVICE_PORT})
