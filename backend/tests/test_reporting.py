"""
Test suite for CSV report exports
Covers column selection, RFC 4180 escaping, the no-data notice and each report's rows
"""
import csv
import io
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from bson.dbref import DBRef

from conftest import make_ctx
from models import UserRole
from services.reporting_service import (
    CURRENT_REGISTRATION_COLUMNS,
    INSPECTOR_MONITORING_COLUMNS,
    ReportingService,
)
from utils.errors import NoDataToExport, RecordNotFoundError, RecordValidationError


def _approved_registration(**overrides):
    doc = {
        "registration_id": "reg-1",
        "status": "Approved",
        "sca_rego_no": "SCA-100",
        "hull_id_number": "H-1",
        "craft_make": "Yamaha",
        "craft_model": 'Banana "23"',
        "owners": [
            {"role": "CoOwner", "first_name": "Ben", "surname": "Tau"},
            {"role": "Primary", "first_name": "Mary", "surname": "Kila, Jr", "phone": "7000 1234"},
        ],
        "effective_date": datetime(2025, 1, 1, tzinfo=timezone.utc),
        "expiry_date": "2026-01-01T00:00:00Z",
    }
    doc.update(overrides)
    return doc


def _parse(content):
    return list(csv.reader(io.StringIO(content)))


class TestColumns:
    """Column subsets and ordering"""

    def test_every_report_is_listed_with_its_columns(self):
        reports = {r["report_type"]: r for r in ReportingService().list_reports()}
        assert set(reports) == {
            "current_registrations", "expired_registrations", "inspections_data",
            "inspector_monitoring", "infringements",
        }
        assert reports["current_registrations"]["columns"] == CURRENT_REGISTRATION_COLUMNS

    def test_default_is_full_column_set(self):
        assert ReportingService().resolve_columns("inspector_monitoring") == INSPECTOR_MONITORING_COLUMNS

    def test_subset_keeps_requested_order(self):
        columns = ReportingService().resolve_columns("current_registrations", ["expiry_date", "sca_rego_no"])
        assert columns == ["expiry_date", "sca_rego_no"]

    def test_unknown_column_is_rejected(self):
        with pytest.raises(RecordValidationError) as exc_info:
            ReportingService().resolve_columns("current_registrations", ["sca_rego_no", "password_hash"])
        assert "password_hash" in exc_info.value.message

    def test_duplicate_column_is_rejected(self):
        with pytest.raises(RecordValidationError):
            ReportingService().resolve_columns("current_registrations", ["sca_rego_no", "sca_rego_no"])

    def test_unknown_report_is_not_found(self):
        with pytest.raises(RecordNotFoundError):
            ReportingService().resolve_columns("everything")


class TestCsvRendering:
    """RFC 4180 output"""

    def test_fields_with_commas_quotes_and_newlines_are_quoted(self):
        content = ReportingService().render_csv(
            [{"a": 'He said "hi"', "b": "one, two", "c": "line\nbreak", "d": None}],
            ["a", "b", "c", "d"],
        )
        assert content.splitlines()[0] == "a,b,c,d"
        assert '"He said ""hi""","one, two","line\nbreak",' in content
        assert _parse(content)[1] == ['He said "hi"', "one, two", "line\nbreak", ""]


class TestExports:
    """export_report against the in-memory store"""

    @pytest.mark.asyncio
    async def test_current_registrations_subset(self, fake_db):
        fake_db.registrations.docs.extend([
            _approved_registration(),
            _approved_registration(registration_id="reg-2", sca_rego_no="SCA-200", status="Draft"),
        ])
        result = await ReportingService().export_report(
            make_ctx(UserRole.REGISTRAR), "current_registrations",
            ["sca_rego_no", "primary_owner", "craft_model", "expiry_date"],
        )

        rows = _parse(result["content"])
        assert rows[0] == ["sca_rego_no", "primary_owner", "craft_model", "expiry_date"]
        assert rows[1] == ["SCA-100", "Mary Kila, Jr", 'Banana "23"', "2026-01-01"]
        assert len(rows) == 2
        assert result["row_count"] == 1
        assert result["content_type"] == "text/csv"
        assert result["filename"].startswith("current_registrations_")

        audit = fake_db.audit_logs.docs[-1]
        assert audit["action"] == "REPORT_EXPORTED"
        assert audit["metadata"]["row_count"] == 1

    @pytest.mark.asyncio
    async def test_no_data_raises_notice(self, fake_db):
        fake_db.registrations.docs.append(_approved_registration(status="Approved"))
        with pytest.raises(NoDataToExport) as exc_info:
            await ReportingService().export_report(make_ctx(), "expired_registrations")
        assert exc_info.value.to_dict() == {
            "detail": "No data available for report 'expired_registrations'",
            "no_data": True,
            "report_type": "expired_registrations",
        }
        assert fake_db.audit_logs.docs == []

    @pytest.mark.asyncio
    async def test_inspections_data_joins_registration_and_inspector(self, fake_db):
        fake_db.registrations.docs.append(_approved_registration())
        fake_db.users.docs.append({"user_id": "insp-a", "email": "a@sca.gov.pg", "display_name": "Inspector A"})
        fake_db.inspections.docs.extend([
            {
                "inspection_id": "i-1", "status": "Passed", "inspection_type": "Initial",
                "registration_ref": DBRef("registrations", "reg-1"), "inspector_ref": DBRef("users", "insp-a"),
                "inspection_date": {"seconds": 1735689600, "nanoseconds": 0}, "follow_up_required": True,
            },
            {"inspection_id": "i-2", "status": "Scheduled", "registration_ref": "reg-1"},
        ])
        result = await ReportingService().export_report(make_ctx(), "inspections_data")
        rows = list(csv.DictReader(io.StringIO(result["content"])))
        assert len(rows) == 1
        assert rows[0]["sca_rego_no"] == "SCA-100"
        assert rows[0]["inspector"] == "Inspector A"
        assert rows[0]["inspection_date"] == "2025-01-01"
        assert rows[0]["follow_up_required"] == "Yes"

    @pytest.mark.asyncio
    async def test_inspector_monitoring_counts_by_status(self, fake_db):
        fake_db.users.docs.append({"user_id": "insp-a", "email": "a@sca.gov.pg", "display_name": "Inspector A"})
        fake_db.inspections.docs.extend([
            {"inspection_id": "1", "status": "Passed", "inspector_ref": DBRef("users", "insp-a"),
             "inspection_date": datetime(2025, 3, 1)},
            {"inspection_id": "2", "status": "Failed", "inspector_ref": "users/insp-a",
             "inspection_date": "2025-04-02T08:00:00Z"},
            {"inspection_id": "3", "status": "Scheduled", "inspector_ref": DBRef("users", "insp-a")},
            {"inspection_id": "4", "status": "Scheduled", "inspector_ref": DBRef("users", "gone")},
            {"inspection_id": "5", "status": "Scheduled", "inspector_ref": None},
        ])
        rows = await ReportingService().build_rows("inspector_monitoring")
        by_name = {r["inspector"]: r for r in rows}
        assert set(by_name) == {"Inspector A", "gone"}
        a = by_name["Inspector A"]
        assert (a["total_assigned"], a["passed"], a["failed"], a["scheduled"]) == (3, 1, 1, 1)
        assert a["last_inspection_date"] == "2025-04-02"
        assert by_name["gone"]["email"] == ""

    @pytest.mark.asyncio
    async def test_infringements_skip_drafts_and_use_snapshot(self, fake_db):
        fake_db.infringements.docs.extend([
            {
                "infringement_id": "f-1", "status": "Overdue", "total_points": 30,
                "registration_data": {"id": "reg-1", "sca_rego_no": "SCA-100"},
                "issued_by_ref": DBRef("users", "insp-x"), "issued_by_data": {"id": "insp-x", "display_name": "Officer X"},
                "infringement_items": [{"item_id": "UNREG_CRAFT", "description": "Operating an unregistered craft"},
                                       {"item_id": "SPEEDING_ZONE"}],
            },
            {"infringement_id": "f-2", "status": "Draft"},
        ])
        rows = await ReportingService().build_rows("infringements")
        assert len(rows) == 1
        assert rows[0]["issued_by"] == "Officer X"
        assert rows[0]["items"] == "Operating an unregistered craft; SPEEDING_ZONE"
        assert rows[0]["sca_rego_no"] == "SCA-100"
