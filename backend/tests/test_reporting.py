"""
Unit tests for the reporting projector.
Tests services/reporting.py over plain bill snapshots.
"""
import pytest

from services.reporting import (
    REPORT_DEFINITIONS,
    InvalidReportFilterError,
    ReportFilters,
    UnknownReportError,
    bill_journey_report,
    days_between,
    format_date,
    get_report_definition,
    outstanding_bills_report,
    parse_amount,
    pending_bills_report,
    project_report,
)


VENDORS = {
    "vendor-1": {"id": "vendor-1", "vendor_no": "V001", "vendor_name": "Acme Builders"},
    "vendor-2": {"id": "vendor-2", "vendor_no": "V002", "vendor_name": "Zenith Steel"},
}

GENERATED_AT = "2025-04-01T00:00:00+00:00"


def bill(bill_id, **fields):
    base = {
        "id": bill_id,
        "serial_number": f"25{bill_id[-1].zfill(5)}",
        "vendor": "vendor-1",
        "region": "Mumbai",
        "tax_inv_amount": 100,
    }
    base.update(fields)
    return base


class TestHelpers:

    def test_format_date(self):
        assert format_date("2025-03-10T15:30:00+00:00") == "10-03-2025"
        assert format_date(None) is None
        assert format_date("garbage") is None

    def test_parse_amount(self):
        assert parse_amount("12.5") == 12.5
        assert parse_amount(None) == 0.0
        assert parse_amount("abc") == 0.0

    def test_days_between_rounds_up(self):
        assert days_between("2025-03-01T00:00:00", "2025-03-02T01:00:00") == 2
        assert days_between("2025-03-05", "2025-03-01") == 4
        assert days_between("2025-03-05", None) is None

    def test_unknown_report(self):
        with pytest.raises(UnknownReportError):
            get_report_definition("invoices_lost")

    def test_report_catalog(self):
        assert len(REPORT_DEFINITIONS) == 11
        assert "invoices_received_at_regional_office" in REPORT_DEFINITIONS


class TestStageReports:

    def test_received_at_site(self):
        bills = [
            bill("b1", tax_inv_received_at_site="2025-03-01"),
            bill("b2", tax_inv_received_at_site="2025-03-02",
                 regional_office={"date_received": "2025-03-05"}),
            bill("b3"),
        ]
        report = project_report(REPORT_DEFINITIONS["invoices_received_at_site"], bills, VENDORS,
                                generated_at=GENERATED_AT)

        assert [r["serial_number"] for r in report["data"]] == ["2500001"]
        row = report["data"][0]
        assert row["vendor_name"] == "Acme Builders"
        assert row["stage_date"] == "01-03-2025"
        assert row["tax_inv_number"] == "N/A"
        assert report["summary"] == {"total_count": 1, "total_tax_inv_amount": 100.0}
        assert report["filter_criteria"] == {"date_range": "All dates"}
        assert report["generated_at"] == GENERATED_AT

    def test_received_at_regional_office_excludes_given_to_accounts(self):
        received = {"date_received": "2025-03-05"}
        bills = [
            bill("b1", tax_inv_received_at_site="2025-03-01", regional_office=received),
            bill("b2", tax_inv_received_at_site="2025-03-01", regional_office=received,
                 accounts_dept={"date_given": "2025-03-08"}),
        ]
        report = project_report(REPORT_DEFINITIONS["invoices_received_at_regional_office"], bills, VENDORS)
        assert [r["serial_number"] for r in report["data"]] == ["2500001"]

    def test_date_range_includes_end_day(self):
        bills = [
            bill("b1", tax_inv_received_at_site="2025-03-10T15:30:00"),
            bill("b2", tax_inv_received_at_site="2025-03-11T00:00:01"),
            bill("b3", tax_inv_received_at_site="2025-03-01T08:00:00"),
        ]
        filters = ReportFilters(start_date="2025-03-01", end_date="2025-03-10")
        report = project_report(REPORT_DEFINITIONS["invoices_received_at_site"], bills, VENDORS, filters)

        assert [r["serial_number"] for r in report["data"]] == ["2500001", "2500003"]
        assert report["filter_criteria"]["date_range"] == {"from": "01-03-2025", "to": "10-03-2025"}

    def test_region_and_vendor_filters(self):
        bills = [
            bill("b1", tax_inv_received_at_site="2025-03-01"),
            bill("b2", tax_inv_received_at_site="2025-03-01", region="Pune"),
            bill("b3", tax_inv_received_at_site="2025-03-01", vendor="vendor-2"),
        ]
        definition = REPORT_DEFINITIONS["invoices_received_at_site"]

        by_region = project_report(definition, bills, VENDORS, ReportFilters(region="Pune"))
        assert [r["serial_number"] for r in by_region["data"]] == ["2500002"]

        by_vendor = project_report(definition, bills, VENDORS, ReportFilters(vendor="Zenith Steel"))
        assert [r["serial_number"] for r in by_vendor["data"]] == ["2500003"]

    def test_unknown_vendor_renders_na(self):
        bills = [bill("b1", vendor="vendor-9", measurement_check={"date_given": "2025-03-01"})]
        report = project_report(REPORT_DEFINITIONS["invoices_given_to_measurement"], bills, VENDORS)
        assert report["data"][0]["vendor_name"] == "N/A"
        assert report["data"][0]["vendor_no"] == "N/A"

    def test_paid_sorted_newest_first(self):
        bills = [
            bill("b1", accounts_dept={"date_received": "2025-03-01", "payment_date": "2025-03-10"}),
            bill("b2", accounts_dept={"date_received": "2025-03-01", "payment_date": "2025-03-20"}),
            bill("b3", accounts_dept={"date_received": "2025-03-01"}),
        ]
        report = project_report(REPORT_DEFINITIONS["invoices_paid"], bills, VENDORS)
        assert [r["serial_number"] for r in report["data"]] == ["2500002", "2500001"]
        assert [r["sr_no"] for r in report["data"]] == [1, 2]

    def test_invalid_date_filter(self):
        with pytest.raises(InvalidReportFilterError):
            project_report(REPORT_DEFINITIONS["invoices_paid"], [], VENDORS,
                           ReportFilters(start_date="2025-13-45"))


class TestGroupedReports:

    def test_outstanding_grouped_by_vendor(self):
        unpaid = {"date_received": "2025-03-01"}
        bills = [
            bill("b1", vendor="vendor-2", tax_inv_amount="250.50", accounts_dept=unpaid,
                 cop_details={"amount": 200}),
            bill("b2", vendor="vendor-1", tax_inv_amount=100, accounts_dept=unpaid),
            bill("b3", vendor="vendor-1", tax_inv_amount=50, accounts_dept=unpaid),
            bill("b4", vendor=None, tax_inv_amount=10, accounts_dept=unpaid),
            bill("b5", vendor="vendor-1", tax_inv_amount=999,
                 accounts_dept={"date_received": "2025-03-01", "payment_date": "2025-03-05"}),
        ]

        report = outstanding_bills_report(bills, VENDORS)

        assert [g["vendor_name"] for g in report["data"]] == ["Acme Builders", "N/A", "Zenith Steel"]
        acme = report["data"][0]
        assert acme["bill_count"] == 2
        assert acme["subtotal"] == 150.0
        assert report["data"][2]["subtotal_cop_amount"] == 200.0
        assert report["summary"] == {
            "record_count": 4,
            "vendor_count": 3,
            "grand_total_amount": 410.5,
            "grand_total_cop_amount": 200.0,
        }
        assert acme["bills"][0]["date_received_in_accounts"] == "01-03-2025"
        assert acme["bills"][0]["payment_instructions"] == "N/A"

    def test_pending_bills(self):
        bills = [
            bill("b1", tax_inv_received_at_site="2025-03-01",
                 workflow_state={"current_state": "Regional_Office"}, position=2),
            bill("b2", tax_inv_received_at_site="2025-03-01",
                 accounts_dept={"payment_date": "2025-03-09"}),
        ]

        report = pending_bills_report(bills, VENDORS)

        assert report["summary"]["record_count"] == 1
        row = report["data"][0]["bills"][0]
        assert row["current_state"] == "Regional_Office"
        assert row["position"] == 2


class TestBillJourney:

    def test_stage_days_and_averages(self):
        bills = [
            bill("b1",
                 tax_inv_date="2025-03-01",
                 tax_inv_received_at_site="2025-03-03",
                 site_office_dispatch={"date_given": "2025-03-05"},
                 regional_office={"date_received": "2025-03-06"},
                 accounts_dept={"date_given": "2025-03-10", "date_received": "2025-03-11",
                                "payment_date": "2025-03-21"}),
            bill("b2",
                 tax_inv_date="2025-03-01",
                 tax_inv_received_at_site="2025-03-02",
                 site_office_dispatch={"date_given": "2025-03-06"}),
        ]

        report = bill_journey_report(bills, VENDORS)

        first, second = report["data"]
        assert first["delay_for_receiving_invoice"] == 2
        assert first["days_at_site"] == 2
        assert first["days_at_regional_office"] == 4
        assert first["days_at_accounts"] == 10
        assert first["days_for_payment"] == 20
        assert second["days_at_accounts"] is None

        averages = report["summary"]["average_processing_days"]
        assert averages["site_processing"] == 3.0
        assert averages["regional_office_processing"] == 4.0
        assert averages["total_payment_days"] == 20.0
        assert report["summary"]["total_invoice_amount"] == 200.0

    def test_journey_filters_on_invoice_date(self):
        bills = [bill("b1", tax_inv_date="2025-02-01"), bill("b2", tax_inv_date="2025-03-15")]
        report = bill_journey_report(bills, VENDORS, ReportFilters(start_date="2025-03-01"))
        assert [r["serial_number"] for r in report["data"]] == ["2500002"]
