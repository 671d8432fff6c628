"""
Orders Router
Dashboard views, operator fixes, manual approval, revalidation and purge.
"""
from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
from typing import Any, Dict, List, Optional, Union
import logging

from routers.imports import owner_from_header
from schemas.order_schemas import OrderView, PersistedOrderRecord
from services.errors import AmbiguousRecoveryError, OrderNotFoundError
from services.order_importer import order_importer
from services.storage import storage

logger = logging.getLogger(__name__)
router = APIRouter()


class OrderFixRequest(BaseModel):
    tags: Optional[Union[List[str], str]] = None
    occurredAt: Optional[str] = None
    email: Optional[str] = None
    customerName: Optional[str] = None
    location: Optional[str] = None
    deliveryMethod: Optional[str] = None


def serialize_record(record: PersistedOrderRecord) -> Dict[str, Any]:
    return {
        "orderId": record.order_id,
        "category": record.snapshot.category.value,
        "latestDisputeStatus": record.latest_dispute_status.value,
        "latestRiskLabel": record.latest_risk_label,
        "riskFlag": record.risk_flag,
        "sources": sorted(k for k, v in record.sources.items() if v),
        "validationError": record.snapshot.validation_error,
        "order": record.snapshot.to_dict(),
    }


def fix_request_to_updates(payload: OrderFixRequest) -> Dict[str, Any]:
    """Map the request body onto CanonicalOrder field edits."""
    body = payload.model_dump(exclude_unset=True)
    updates: Dict[str, Any] = {}
    customer: Dict[str, Any] = {}
    if "tags" in body:
        updates["tags"] = body["tags"] or []
    if "occurredAt" in body:
        updates["occurred_at"] = body["occurredAt"]
    if "deliveryMethod" in body:
        updates["delivery_method"] = body["deliveryMethod"] or ""
    if "email" in body:
        customer["email"] = (body["email"] or "").strip()
    if "customerName" in body:
        customer["display_name"] = body["customerName"] or "Guest"
    if "location" in body:
        customer["location"] = body["location"] or "Unknown"
    if customer:
        updates["customer"] = customer
    return updates


@router.get("/orders")
async def list_orders(
    view: OrderView = OrderView.ALL,
    limit: int = 100,
    offset: int = 0,
    owner_id: str = Depends(owner_from_header),
):
    """Orders for one dashboard tab, newest first"""
    try:
        records = await storage.list_orders(
            owner_id, view, limit=max(1, min(limit, 1000)), offset=max(0, offset)
        )
        return {"view": view.value, "orders": [serialize_record(r) for r in records]}
    except Exception:
        logger.exception(f"Failed to list orders owner={owner_id} view={view}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/orders/counts")
async def order_counts(owner_id: str = Depends(owner_from_header)):
    try:
        return {"counts": await storage.count_by_view(owner_id)}
    except Exception:
        logger.exception(f"Failed to count orders owner={owner_id}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/orders/revalidate")
async def revalidate_orders(owner_id: str = Depends(owner_from_header)):
    """Re-run validation over every stored order of the owner"""
    try:
        changed = await order_importer.revalidate_owner(owner_id)
        return {"changed": changed}
    except Exception:
        logger.exception(f"Revalidation failed owner={owner_id}")
        raise HTTPException(status_code=500, detail="Revalidation failed")


@router.delete("/orders")
async def purge_orders(owner_id: str = Depends(owner_from_header)):
    """Delete ALL stored orders and import runs for the owner"""
    try:
        deleted = await order_importer.purge(owner_id)
        return {"deleted": deleted}
    except Exception:
        logger.exception(f"Purge failed owner={owner_id}")
        raise HTTPException(status_code=500, detail="Purge failed")


@router.get("/orders/{order_id}")
async def get_order(order_id: str, owner_id: str = Depends(owner_from_header)):
    try:
        record = await storage.get_order(owner_id, order_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return serialize_record(record)
    except HTTPException:
        raise
    except Exception:
        logger.exception(f"Failed to load order {order_id}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.patch("/orders/{order_id}")
async def fix_order(
    order_id: str,
    payload: OrderFixRequest,
    owner_id: str = Depends(owner_from_header),
):
    """Apply operator edits and re-validate"""
    try:
        record = await order_importer.update_order(owner_id, order_id, fix_request_to_updates(payload))
        return serialize_record(record)
    except OrderNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception(f"Failed to update order {order_id}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/orders/{order_id}/approve")
async def approve_order(order_id: str, owner_id: str = Depends(owner_from_header)):
    """Manual approval out of quarantine"""
    try:
        record = await order_importer.approve_order(owner_id, order_id)
        return serialize_record(record)
    except OrderNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AmbiguousRecoveryError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception:
        logger.exception(f"Failed to approve order {order_id}")
        raise HTTPException(status_code=500, detail="Internal server error")
