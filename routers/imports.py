"""
Import Router
CSV uploads, feed pages and import-run status.
"""
from fastapi import APIRouter, UploadFile, File, Form, Header, HTTPException, Depends, Request
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
import logging
import uuid

from database import ImportRun
from services.errors import MergeConflictError, OrderImportError
from services.order_importer import order_importer
from services.storage import storage
from settings import MAX_CSV_SIZE_BYTES, MAX_CSV_SIZE_MB, require_owner_id

logger = logging.getLogger(__name__)
router = APIRouter()


def owner_from_header(x_owner_id: Optional[str] = Header(None)) -> str:
    """Resolve the X-Owner-Id header; every route is owner-scoped."""
    try:
        return require_owner_id(x_owner_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Missing X-Owner-Id header")


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def serialize_run(run: ImportRun) -> Dict[str, Any]:
    return {
        "id": run.id,
        "ownerId": run.owner_id,
        "source": run.source,
        "filename": run.filename,
        "category": run.category,
        "status": run.status,
        "totalRows": run.total_rows,
        "processedOrders": run.processed_orders,
        "quarantinedOrders": run.quarantined_orders,
        "skippedRows": run.skipped_rows,
        "errorMessage": run.error_message,
        "createdAt": run.created_at.isoformat() if run.created_at else None,
        "updatedAt": run.updated_at.isoformat() if run.updated_at else None,
    }


class FeedImportRequest(BaseModel):
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    category: Optional[str] = None


@router.post("/imports/csv")
async def import_csv(
    request: Request,
    file: UploadFile = File(...),
    category: Optional[str] = Form(None),
    owner_id: str = Depends(owner_from_header),
):
    request_id = _request_id(request)
    try:
        logger.info(f"[{request_id}] CSV import attempt owner={owner_id} filename={file.filename!r} category={category!r}")

        if not file.filename or not file.filename.lower().endswith(".csv"):
            logger.warning(f"[{request_id}] Reject non-CSV filename={file.filename!r}")
            raise HTTPException(status_code=400, detail="Only CSV files are allowed")

        content = await file.read()
        size = len(content or b"")
        logger.info(f"[{request_id}] Received payload size={size} bytes")

        if size == 0:
            raise HTTPException(status_code=400, detail="Empty file")
        if size > MAX_CSV_SIZE_BYTES:
            raise HTTPException(status_code=400, detail=f"File too large. Maximum size is {MAX_CSV_SIZE_MB}MB")

        summary = await order_importer.import_csv(owner_id, content, category, filename=file.filename)
        return {**summary.to_dict(), "requestId": request_id}

    except HTTPException as he:
        logger.error(f"[{request_id}] HTTP {he.status_code} during CSV import: {he.detail}")
        raise
    except MergeConflictError:
        logger.error(f"[{request_id}] CSV import gave up after repeated write conflicts")
        raise HTTPException(status_code=409, detail="Concurrent import in progress, retry later")
    except OrderImportError as e:
        # missing identity column, undecodable payload, empty file
        raise HTTPException(status_code=400, detail=str(e))
    except ValueError as e:
        # bad category selector
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception(f"[{request_id}] CSV import error")
        raise HTTPException(status_code=500, detail="Import failed")


@router.post("/imports/feed")
async def import_feed(
    request: Request,
    payload: FeedImportRequest,
    owner_id: str = Depends(owner_from_header),
):
    request_id = _request_id(request)
    try:
        summary = await order_importer.import_feed(owner_id, payload.nodes, payload.category)
        return {**summary.to_dict(), "requestId": request_id}
    except MergeConflictError:
        raise HTTPException(status_code=409, detail="Concurrent import in progress, retry later")
    except OrderImportError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception(f"[{request_id}] Feed import error")
        raise HTTPException(status_code=500, detail="Import failed")


@router.get("/imports")
async def list_import_runs(
    limit: int = 10,
    owner_id: str = Depends(owner_from_header),
):
    try:
        runs = await storage.get_recent_import_runs(owner_id, limit=max(1, min(limit, 100)))
        return {"imports": [serialize_run(r) for r in runs]}
    except Exception:
        logger.exception("Failed to list import runs")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/imports/{run_id}")
async def get_import_run(
    run_id: str,
    owner_id: str = Depends(owner_from_header),
):
    try:
        run = await storage.get_import_run(owner_id, run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Import not found")
        return serialize_run(run)
    except HTTPException:
        raise
    except Exception:
        logger.exception(f"Failed to load import run {run_id}")
        raise HTTPException(status_code=500, detail="Internal server error")
