"""
FastAPI Application Entry Point
Order Risk & Dispute Reconciler - Python Backend
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
import os
import asyncio
import logging
import json
import sys
import time
import uuid as _uuid
from typing import Callable

from routers import imports, orders
from database import init_db, check_db_health
from settings import CORS_ORIGINS, INIT_DB_ON_STARTUP, LOG_LEVEL, OWNER_HEADER, sanitize_owner_id

# LogRecord attributes copied into the JSON line when a call passes them via extra=
CONTEXT_FIELDS = ("request_id", "owner_id", "run_id")


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with request/owner context when present."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "severity": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value:
                payload[name] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: str = LOG_LEVEL) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)  # INFO prints SQL


configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Order Reconciler API",
    description="Risk and dispute reconciliation for e-commerce orders",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS or ["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id"],
)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tags every request with an id and logs method, path, owner and duration."""

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-Id") or str(_uuid.uuid4())
        owner_id = sanitize_owner_id(request.headers.get(OWNER_HEADER)) or "-"
        context = {"request_id": request_id, "owner_id": owner_id}
        request.state.request_id = request_id
        started = time.perf_counter()

        # body is not logged; uploads can be large
        logger.info(f"--> {request.method} {request.url.path}", extra=context)
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"Unhandled error in {request.method} {request.url.path}", extra=context)
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"<-- {request.method} {request.url.path} {response.status_code} {elapsed_ms:.0f}ms",
            extra=context,
        )
        response.headers["X-Request-Id"] = request_id
        return response


app.add_middleware(RequestIDMiddleware)


@app.get("/")
async def root_status():
    return {"ok": True, "service": "order-reconciler"}


@app.get("/healthz")
async def healthz():
    """Basic health check for load balancers."""
    return {"ok": True}


@app.get("/api/health")
async def api_health():
    """Health check including database status."""
    db_health = await check_db_health()
    overall_status = "healthy" if db_health["status"] == "ok" else "degraded"
    return {
        "status": overall_status,
        "database": db_health,
        "timestamp": time.time(),
    }


# --- Error handlers ---
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    logger.error(f"Validation error: {errors}")
    return JSONResponse(status_code=422, content={"detail": errors, "error": "Validation failed"})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


# --- Routers ---
app.include_router(imports.router, prefix="/api", tags=["imports"])
app.include_router(orders.router, prefix="/api", tags=["orders"])


# --- Startup/shutdown ---
@app.on_event("startup")
async def startup():
    logger.info("Starting Order Reconciler API...")
    if INIT_DB_ON_STARTUP:
        try:
            logger.info("Initializing database tables...")
            await asyncio.wait_for(init_db(), timeout=120)
            logger.info("Database initialized successfully")
        except asyncio.TimeoutError:
            logger.error("DB init timed out after 120s, continuing without init")
        except Exception as e:
            logger.error(f"DB init failed (continuing to serve): {e}", exc_info=True)
    else:
        logger.info("Skipping DB init on startup")


@app.on_event("shutdown")
async def shutdown():
    logger.info("Shutting down Order Reconciler API...")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=os.getenv("NODE_ENV") == "development"
    )
