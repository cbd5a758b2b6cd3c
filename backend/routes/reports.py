"""
Bill Workflow Hub - Reports Router

Stage reports, vendor-grouped outstanding/pending reports and the bill
journey report.
"""

from fastapi import APIRouter, HTTPException, Query
from typing import Dict, List, Optional
import logging

from services.reporting import (
    InvalidReportFilterError,
    REPORT_DEFINITIONS,
    ReportFilters,
    UnknownReportError,
    bill_journey_report,
    get_report_definition,
    outstanding_bills_report,
    pending_bills_report,
    project_report,
)
from services.stores import StorageFaultError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"])

# Bill store and master data - set by main app
bill_store = None
master_data = None

def set_dependencies(bills, lookup):
    global bill_store, master_data
    bill_store = bills
    master_data = lookup


async def _load_bills_and_vendors():
    """All bill snapshots plus the vendors they reference."""
    try:
        bills: List[Dict] = await bill_store.list_bills()
        refs = [b.get("vendor") for b in bills if isinstance(b.get("vendor"), str)]
        vendors = await master_data.get_vendors(refs) if master_data and refs else {}
    except StorageFaultError as e:
        logger.error("Report data load failed: %s", e.message)
        raise HTTPException(status_code=503, detail=e.message)
    return bills, vendors


def _filters(start_date, end_date, region, vendor) -> ReportFilters:
    return ReportFilters(start_date=start_date, end_date=end_date, region=region, vendor=vendor)


# ==================== REPORT CATALOG ====================

@router.get("")
async def list_reports():
    """Available stage reports."""
    return {
        "reports": [
            {"key": d.key, "title": d.title, "logic": d.logic}
            for d in REPORT_DEFINITIONS.values()
        ]
    }


# ==================== GROUPED REPORTS ====================

@router.get("/outstanding-bills")
async def get_outstanding_bills(
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    vendor: Optional[str] = Query(None)
):
    """Bills received in accounts but not yet paid, grouped by vendor."""
    bills, vendors = await _load_bills_and_vendors()
    try:
        report = outstanding_bills_report(bills, vendors, _filters(start_date, end_date, None, vendor))
    except InvalidReportFilterError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "report": report}


@router.get("/pending-bills")
async def get_pending_bills(
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    region: Optional[str] = Query(None),
    vendor: Optional[str] = Query(None)
):
    """Bills received at site but not yet paid, grouped by vendor."""
    bills, vendors = await _load_bills_and_vendors()
    try:
        report = pending_bills_report(bills, vendors, _filters(start_date, end_date, region, vendor))
    except InvalidReportFilterError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "report": report}


@router.get("/bill-journey")
async def get_bill_journey(
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    region: Optional[str] = Query(None),
    vendor: Optional[str] = Query(None)
):
    """Days spent per stage for each bill."""
    bills, vendors = await _load_bills_and_vendors()
    try:
        report = bill_journey_report(bills, vendors, _filters(start_date, end_date, region, vendor))
    except InvalidReportFilterError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "report": report}


# ==================== STAGE REPORTS ====================

@router.get("/{report_key}")
async def get_stage_report(
    report_key: str,
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    region: Optional[str] = Query(None),
    vendor: Optional[str] = Query(None)
):
    try:
        definition = get_report_definition(report_key)
    except UnknownReportError:
        raise HTTPException(status_code=404, detail=f"Unknown report: {report_key}")

    bills, vendors = await _load_bills_and_vendors()
    try:
        report = project_report(definition, bills, vendors, _filters(start_date, end_date, region, vendor))
    except InvalidReportFilterError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "report": report}
