"""
Bill Workflow Hub - Workflows Router

Batch hand-offs of bills between roles, plus history and dashboard queries.
"""

from fastapi import APIRouter, HTTPException, Query
from typing import Any, List, Optional, Union
from pydantic import BaseModel
import logging

from services.stores import StorageFaultError
from services.workflow_engine import BillNotFoundError, WorkflowError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflows"])

# Workflow engine - set by main app
workflow_engine = None

def set_dependencies(engine):
    global workflow_engine
    workflow_engine = engine


# ==================== MODELS ====================

class ActorRef(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    role: Optional[Union[str, List[str]]] = None


class BatchTransitionRequest(BaseModel):
    # Left loose so malformed requests reach the engine and come back as 400
    from_user: Optional[ActorRef] = None
    to_user: Optional[ActorRef] = None
    bill_ids: Optional[Any] = None
    action: Optional[str] = None
    remarks: Optional[str] = None


def _raise_http(e: Exception):
    if isinstance(e, BillNotFoundError):
        raise HTTPException(status_code=404, detail=e.message)
    if isinstance(e, StorageFaultError):
        logger.error("Storage fault: %s", e.message)
        raise HTTPException(status_code=503, detail=e.message)
    raise HTTPException(status_code=400, detail=e.message)


# ==================== TRANSITIONS ====================

@router.post("/batch-transition")
async def batch_transition(request: BatchTransitionRequest):
    """
    Hand a batch of bills from one user to another.

    Each bill succeeds or fails on its own; the response lists both.
    """
    try:
        result = await workflow_engine.apply_batch_transition(
            from_user=request.from_user.model_dump() if request.from_user else None,
            to_user=request.to_user.model_dump() if request.to_user else None,
            bill_ids=request.bill_ids,
            action=request.action,
            remarks=request.remarks,
        )
    except WorkflowError as e:
        _raise_http(e)
    return result.to_dict()


# ==================== BILL QUERIES ====================

@router.get("/bills/{bill_id}/history")
async def get_bill_history(bill_id: str):
    """Every transition attempt for a bill, oldest first."""
    try:
        history = await workflow_engine.get_history(bill_id)
    except StorageFaultError as e:
        _raise_http(e)
    return {"success": True, "data": history}


@router.get("/bills/{bill_id}/time-in-state")
async def get_time_in_state(bill_id: str):
    try:
        data = await workflow_engine.get_time_in_each_state(bill_id)
    except (WorkflowError, StorageFaultError) as e:
        _raise_http(e)
    return {"success": True, "data": data}


@router.get("/bills/{bill_id}")
async def get_bill_workflow(bill_id: str):
    """Workflow summary of a bill including its history."""
    try:
        data = await workflow_engine.get_bill_workflow(bill_id)
    except (WorkflowError, StorageFaultError) as e:
        _raise_http(e)
    return {"success": True, "data": data}


# ==================== DASHBOARD QUERIES ====================

@router.get("/state-counts")
async def get_state_counts():
    try:
        counts = await workflow_engine.get_current_state_counts()
    except StorageFaultError as e:
        _raise_http(e)
    return {"success": True, "data": counts}


@router.get("/stuck")
async def get_stuck_bills(threshold_days: Optional[int] = Query(None, ge=0)):
    """Bills with no update for longer than the threshold."""
    try:
        bills = await workflow_engine.get_stuck_bills(threshold_days)
    except StorageFaultError as e:
        _raise_http(e)
    return {"success": True, "count": len(bills), "data": bills}


@router.get("/stats")
async def get_workflow_stats():
    try:
        stats = await workflow_engine.get_workflow_stats()
    except StorageFaultError as e:
        _raise_http(e)
    return {"success": True, "data": stats}


@router.get("/users/{user_id}/activity")
async def get_user_activity(user_id: str, limit: int = Query(50, ge=1, le=500)):
    try:
        activity = await workflow_engine.get_user_activity(user_id, limit=limit)
    except StorageFaultError as e:
        _raise_http(e)
    return {"success": True, "data": activity}


@router.get("/roles/performance")
async def get_role_performance():
    try:
        metrics = await workflow_engine.get_role_performance()
    except StorageFaultError as e:
        _raise_http(e)
    return {"success": True, "data": metrics}


@router.get("/above-level/{role}")
async def get_bills_above_level(role: str):
    """Bills that have moved past the level the given role works at."""
    try:
        bills = await workflow_engine.get_bills_above_level(role)
    except (WorkflowError, StorageFaultError) as e:
        _raise_http(e)
    return {"success": True, "count": len(bills), "data": bills}


@router.get("/state/{state}")
async def get_bills_by_state(state: str):
    try:
        bills = await workflow_engine.get_bills_by_state(state)
    except (WorkflowError, StorageFaultError) as e:
        _raise_http(e)
    return {"success": True, "count": len(bills), "data": bills}
