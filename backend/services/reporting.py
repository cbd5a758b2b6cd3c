"""
Bill Workflow Hub - Reporting Projector

Read-only projections over bill snapshots for the stage reports, the
vendor-grouped outstanding/pending reports and the bill journey report.

Everything here is a plain function over lists of bill dicts and a
{vendor_ref: vendor} mapping supplied by the caller. Missing master data and
missing descriptive fields render as "N/A".
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from dateutil import parser as date_parser

from .master_data import NOT_AVAILABLE
from .stores import get_path


DATE_FORMAT = "%d-%m-%Y"


class InvalidReportFilterError(ValueError):
    """Raised when a report filter value cannot be parsed."""
    pass


class UnknownReportError(KeyError):
    pass


# =============================================================================
# FILTERS & FORMATTING
# =============================================================================

@dataclass
class ReportFilters:
    """Optional filters shared by every report. Date bounds are inclusive."""
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    region: Optional[str] = None
    vendor: Optional[str] = None

    def date_bounds(self) -> Tuple[Optional[datetime], Optional[datetime]]:
        start = _parse_filter_date(self.start_date, "start_date")
        end = _parse_filter_date(self.end_date, "end_date")
        if start is not None:
            start = start.replace(hour=0, minute=0, second=0, microsecond=0)
        if end is not None:
            # End of day so a bill dated on end_date is included
            end = end.replace(hour=23, minute=59, second=59, microsecond=999999)
        return start, end

    def to_dict(self) -> Dict[str, Any]:
        criteria: Dict[str, Any] = {}
        if self.start_date or self.end_date:
            criteria["date_range"] = {
                "from": format_date(self.start_date) or self.start_date,
                "to": format_date(self.end_date) or self.end_date,
            }
        else:
            criteria["date_range"] = "All dates"
        if self.region:
            criteria["region"] = self.region
        if self.vendor:
            criteria["vendor"] = self.vendor
        return criteria


def parse_date(value: Any) -> Optional[datetime]:
    """Parse a stored date into a naive UTC datetime. Unparseable values yield None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = date_parser.parse(str(value))
        except (ValueError, OverflowError):
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_filter_date(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    parsed = parse_date(value)
    if parsed is None:
        raise InvalidReportFilterError(f"Invalid {name}: {value}")
    return parsed


def format_date(value: Any) -> Optional[str]:
    parsed = parse_date(value)
    return parsed.strftime(DATE_FORMAT) if parsed else None


def parse_amount(value: Any) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if math.isnan(amount) else amount


def days_between(first: Any, second: Any) -> Optional[int]:
    """Whole days between two dates, rounded up. None when either is missing."""
    d1, d2 = parse_date(first), parse_date(second)
    if d1 is None or d2 is None:
        return None
    return math.ceil(abs((d2 - d1).total_seconds()) / 86400)


def _or_na(value: Any) -> Any:
    return NOT_AVAILABLE if value is None or value == "" else value


def _vendor_of(bill: Dict, vendors: Dict[str, Dict]) -> Dict:
    ref = bill.get("vendor")
    if isinstance(ref, dict):
        return ref
    return vendors.get(ref) or {}


def _matches_filters(
    bill: Dict,
    vendors: Dict[str, Dict],
    filters: ReportFilters,
    date_field: Optional[str],
    bounds: Tuple[Optional[datetime], Optional[datetime]]
) -> bool:
    if filters.region and bill.get("region") != filters.region:
        return False
    if filters.vendor:
        vendor = _vendor_of(bill, vendors)
        if filters.vendor not in (bill.get("vendor"), vendor.get("vendor_name"), vendor.get("vendor_no")):
            return False

    start, end = bounds
    if date_field and (start or end):
        value = parse_date(get_path(bill, date_field))
        if value is None:
            return False
        if start and value < start:
            return False
        if end and value > end:
            return False
    return True


def _base_row(bill: Dict, vendors: Dict[str, Dict]) -> Dict[str, Any]:
    vendor = _vendor_of(bill, vendors)
    return {
        "serial_number": _or_na(bill.get("serial_number")),
        "project_description": _or_na(bill.get("project_description")),
        "region": _or_na(bill.get("region")),
        "vendor_no": _or_na(vendor.get("vendor_no")),
        "vendor_name": _or_na(vendor.get("vendor_name")),
        "tax_inv_number": _or_na(bill.get("tax_inv_number")),
        "tax_inv_date": format_date(bill.get("tax_inv_date")) or NOT_AVAILABLE,
        "tax_inv_amount": round(parse_amount(bill.get("tax_inv_amount")), 2),
        "po_number": _or_na(bill.get("po_number")),
    }


def _generated_at(generated_at: Optional[str]) -> str:
    return generated_at or datetime.now(timezone.utc).isoformat()


# =============================================================================
# STAGE REPORTS
# =============================================================================

@dataclass(frozen=True)
class ReportDefinition:
    """
    A stage report. A bill qualifies when every `filled` path holds a value
    and every `empty` path does not.
    """
    key: str
    title: str
    logic: str
    filled: Tuple[str, ...]
    empty: Tuple[str, ...] = ()
    date_field: Optional[str] = None
    sort_field: str = "serial_number"
    sort_descending: bool = False

    def qualifies(self, bill: Dict) -> bool:
        if any(get_path(bill, path) in (None, "") for path in self.filled):
            return False
        return all(get_path(bill, path) in (None, "") for path in self.empty)


def _definition(key, title, logic, filled, empty=(), date_field=None, **kwargs) -> ReportDefinition:
    return ReportDefinition(
        key=key,
        title=title,
        logic=logic,
        filled=tuple(filled),
        empty=tuple(empty),
        date_field=date_field or filled[-1],
        **kwargs
    )


REPORT_DEFINITIONS: Dict[str, ReportDefinition] = {d.key: d for d in (
    _definition(
        "invoices_received_at_site", "Invoices Received at Site",
        "Received at site and not yet received at the regional office",
        ["tax_inv_received_at_site"], ["regional_office.date_received"],
    ),
    _definition(
        "invoices_couriered_to_regional_office", "Invoices Couriered to Regional Office",
        "Received at site and dispatched by the site office",
        ["tax_inv_received_at_site", "site_office_dispatch.date_given"],
    ),
    _definition(
        "invoices_received_at_regional_office", "Invoices Received at Regional Office",
        "Received at the regional office and not yet given to accounts",
        ["tax_inv_received_at_site", "regional_office.date_received"], ["accounts_dept.date_given"],
    ),
    _definition(
        "invoices_given_to_accounts", "Invoices Given to Accounts Department",
        "Given to the accounts department by the regional office",
        ["tax_inv_received_at_site", "regional_office.date_received", "accounts_dept.date_given"],
    ),
    _definition(
        "invoices_paid", "Invoices Paid",
        "Received in accounts with a payment date",
        ["accounts_dept.date_received", "accounts_dept.payment_date"],
        sort_field="accounts_dept.payment_date", sort_descending=True,
    ),
    _definition(
        "invoices_given_to_measurement", "Invoices Given to Measurement Surveyor",
        "Given to the measurement surveyor",
        ["measurement_check.date_given"],
    ),
    _definition(
        "invoices_at_certification", "Invoices Given for Certification",
        "Given to the certification surveyor",
        ["certification.date_given"],
    ),
    _definition(
        "invoices_at_oversight", "Invoices at Oversight Surveyor",
        "Given to the oversight surveyor",
        ["oversight_survey.date_given"],
    ),
    _definition(
        "invoices_returned_by_measurement", "Invoices Returned by Measurement Surveyor",
        "Received at site and returned after measurement",
        ["tax_inv_received_at_site", "vendor_final_invoice.date_given"],
    ),
    _definition(
        "invoices_returned_by_certification", "Invoices Returned by Certification Surveyor",
        "Received at site and returned after certification",
        ["tax_inv_received_at_site", "certification.date_returned"],
    ),
    _definition(
        "invoices_returned_by_oversight", "Invoices Returned by Oversight Surveyor",
        "Received at site and returned to the regional office by the oversight surveyor",
        ["tax_inv_received_at_site", "regional_office.date_returned_from_oversight"],
    ),
)}


def get_report_definition(key: str) -> ReportDefinition:
    try:
        return REPORT_DEFINITIONS[key]
    except KeyError:
        raise UnknownReportError(key)


def _sort_key(value: Any) -> str:
    # Stored dates are ISO strings, which order chronologically as text
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return "" if value is None else str(value)


def project_report(
    definition: ReportDefinition,
    bills: List[Dict],
    vendors: Dict[str, Dict],
    filters: Optional[ReportFilters] = None,
    generated_at: Optional[str] = None
) -> Dict[str, Any]:
    """Project a stage report over bill snapshots."""
    filters = filters or ReportFilters()
    bounds = filters.date_bounds()

    selected = [
        b for b in bills
        if definition.qualifies(b)
        and _matches_filters(b, vendors, filters, definition.date_field, bounds)
    ]
    selected.sort(
        key=lambda b: _sort_key(get_path(b, definition.sort_field)),
        reverse=definition.sort_descending,
    )

    rows = []
    total_amount = 0.0
    for index, bill in enumerate(selected, start=1):
        row = _base_row(bill, vendors)
        row["sr_no"] = index
        row["stage_date"] = format_date(get_path(bill, definition.date_field)) or NOT_AVAILABLE
        total_amount += row["tax_inv_amount"]
        rows.append(row)

    return {
        "key": definition.key,
        "title": definition.title,
        "logic": definition.logic,
        "generated_at": _generated_at(generated_at),
        "filter_criteria": filters.to_dict(),
        "data": rows,
        "summary": {
            "total_count": len(rows),
            "total_tax_inv_amount": round(total_amount, 2),
        },
    }


# =============================================================================
# VENDOR-GROUPED REPORTS
# =============================================================================

@dataclass
class VendorGroup:
    vendor_name: str
    bills: List[Dict] = field(default_factory=list)
    subtotal: float = 0.0
    subtotal_cop_amount: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor_name": self.vendor_name,
            "bill_count": len(self.bills),
            "bills": self.bills,
            "subtotal": round(self.subtotal, 2),
            "subtotal_cop_amount": round(self.subtotal_cop_amount, 2),
        }


def _grouped_report(
    title: str,
    definition: ReportDefinition,
    bills: List[Dict],
    vendors: Dict[str, Dict],
    filters: ReportFilters,
    generated_at: Optional[str],
    extra_columns
) -> Dict[str, Any]:
    bounds = filters.date_bounds()
    selected = [
        b for b in bills
        if definition.qualifies(b)
        and _matches_filters(b, vendors, filters, definition.date_field, bounds)
    ]

    groups: Dict[str, VendorGroup] = {}
    for bill in selected:
        name = _vendor_of(bill, vendors).get("vendor_name") or NOT_AVAILABLE
        groups.setdefault(name, VendorGroup(vendor_name=name))

    grand_total = 0.0
    grand_cop = 0.0
    for bill in sorted(selected, key=lambda b: _sort_key(b.get("tax_inv_date"))):
        group = groups[_vendor_of(bill, vendors).get("vendor_name") or NOT_AVAILABLE]
        amount = parse_amount(bill.get("tax_inv_amount") or get_path(bill, "accounts_dept.payment_amount"))
        cop_amount = parse_amount(get_path(bill, "cop_details.amount"))

        row = _base_row(bill, vendors)
        row["tax_inv_amount"] = round(amount, 2)
        row["cop_amount"] = round(cop_amount, 2)
        row.update(extra_columns(bill))
        group.bills.append(row)

        group.subtotal += amount
        group.subtotal_cop_amount += cop_amount
        grand_total += amount
        grand_cop += cop_amount

    ordered = [groups[name].to_dict() for name in sorted(groups)]
    return {
        "title": title,
        "generated_at": _generated_at(generated_at),
        "filter_criteria": filters.to_dict(),
        "data": ordered,
        "summary": {
            "record_count": len(selected),
            "vendor_count": len(ordered),
            "grand_total_amount": round(grand_total, 2),
            "grand_total_cop_amount": round(grand_cop, 2),
        },
    }


OUTSTANDING_BILLS = _definition(
    "outstanding_bills", "Outstanding Bills Report",
    "Received in accounts and not yet paid",
    ["accounts_dept.date_received"], ["accounts_dept.payment_date"],
    date_field="tax_inv_date",
)

PENDING_BILLS = _definition(
    "pending_bills", "Pending Bills Report",
    "Received at site and not yet paid",
    ["tax_inv_received_at_site"], ["accounts_dept.payment_date"],
    date_field="tax_inv_date",
)


def outstanding_bills_report(
    bills: List[Dict],
    vendors: Dict[str, Dict],
    filters: Optional[ReportFilters] = None,
    generated_at: Optional[str] = None
) -> Dict[str, Any]:
    """Bills received in accounts but unpaid, grouped by vendor with subtotals."""
    def columns(bill):
        return {
            "date_received_in_accounts": format_date(get_path(bill, "accounts_dept.date_received")) or NOT_AVAILABLE,
            "payment_instructions": _or_na(get_path(bill, "accounts_dept.payment_instructions")),
            "remarks_for_payment_instructions": _or_na(get_path(bill, "accounts_dept.remarks_for_pay_instructions")),
        }

    return _grouped_report(
        OUTSTANDING_BILLS.title, OUTSTANDING_BILLS, bills, vendors,
        filters or ReportFilters(), generated_at, columns
    )


def pending_bills_report(
    bills: List[Dict],
    vendors: Dict[str, Dict],
    filters: Optional[ReportFilters] = None,
    generated_at: Optional[str] = None
) -> Dict[str, Any]:
    """Bills received at site but unpaid, grouped by vendor with subtotals."""
    def columns(bill):
        return {
            "tax_inv_received_at_site": format_date(bill.get("tax_inv_received_at_site")) or NOT_AVAILABLE,
            "current_state": _or_na(get_path(bill, "workflow_state.current_state")),
            "position": bill.get("position"),
        }

    return _grouped_report(
        PENDING_BILLS.title, PENDING_BILLS, bills, vendors,
        filters or ReportFilters(), generated_at, columns
    )


# =============================================================================
# BILL JOURNEY
# =============================================================================

# (row key, start date path, end date path)
JOURNEY_STAGES = (
    ("delay_for_receiving_invoice", "tax_inv_date", "tax_inv_received_at_site"),
    ("days_at_site", "tax_inv_received_at_site", "site_office_dispatch.date_given"),
    ("days_at_regional_office", "regional_office.date_received", "accounts_dept.date_given"),
    ("days_at_accounts", "accounts_dept.date_received", "accounts_dept.payment_date"),
    ("days_for_payment", "tax_inv_date", "accounts_dept.payment_date"),
)

JOURNEY_AVERAGES = {
    "days_at_site": "site_processing",
    "days_at_regional_office": "regional_office_processing",
    "days_at_accounts": "accounts_processing",
    "days_for_payment": "total_payment_days",
}


def bill_journey_report(
    bills: List[Dict],
    vendors: Dict[str, Dict],
    filters: Optional[ReportFilters] = None,
    generated_at: Optional[str] = None
) -> Dict[str, Any]:
    """Days each bill spent per stage, with averages over the bills that reached each stage."""
    filters = filters or ReportFilters()
    bounds = filters.date_bounds()
    selected = [b for b in bills if _matches_filters(b, vendors, filters, "tax_inv_date", bounds)]
    selected.sort(key=lambda b: str(b.get("serial_number") or ""))

    totals = {key: [] for key in JOURNEY_AVERAGES}
    total_amount = 0.0
    rows = []

    for bill in selected:
        vendor = _vendor_of(bill, vendors)
        amount = parse_amount(bill.get("tax_inv_amount"))
        total_amount += amount
        row = {
            "serial_number": _or_na(bill.get("serial_number")),
            "region": _or_na(bill.get("region")),
            "project_description": _or_na(bill.get("project_description")),
            "vendor_name": _or_na(vendor.get("vendor_name")),
            "invoice_date": format_date(bill.get("tax_inv_date")) or NOT_AVAILABLE,
            "invoice_amount": round(amount, 2),
        }
        for key, start_path, end_path in JOURNEY_STAGES:
            days = days_between(get_path(bill, start_path), get_path(bill, end_path))
            row[key] = days
            if days is not None and key in totals:
                totals[key].append(days)
        rows.append(row)

    averages = {
        label: round(sum(totals[key]) / len(totals[key]), 1) if totals[key] else 0
        for key, label in JOURNEY_AVERAGES.items()
    }

    return {
        "title": "Bill Journey",
        "generated_at": _generated_at(generated_at),
        "filter_criteria": filters.to_dict(),
        "data": rows,
        "summary": {
            "total_count": len(rows),
            "total_invoice_amount": round(total_amount, 2),
            "average_processing_days": averages,
        },
    }
