"""Reporting Service - CSV exports of registry data.

Report Types:
1. Current Registrations - Approved craft registrations
2. Expired Registrations - Registrations past their expiry
3. Inspections Data - Completed inspections with craft and inspector
4. Inspector Monitoring - Per-inspector activity counts
5. Infringements - Issued notices with points and payment state

Each report has a fixed column set; callers may request any subset of it in
any order. A report with no matching rows raises NoDataToExport instead of
producing an empty file.
"""
from database import database
from models import AuditAction, InfringementStatus, InspectionStatus, RegistrationStatus
from middleware import RequestContext
from services.projections import owner_name, primary_owner
from utils.audit import create_audit_log
from utils.errors import NoDataToExport, RecordNotFoundError, RecordValidationError
from utils.references import ref_id
from utils.timestamps import format_date, normalize_timestamp
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import csv
import io
import logging

logger = logging.getLogger(__name__)

EXPORT_LIMIT = 10000

CURRENT_REGISTRATION_COLUMNS = [
    "sca_rego_no",
    "hull_id_number",
    "craft_make",
    "craft_model",
    "craft_year",
    "craft_color",
    "vessel_type",
    "craft_use",
    "primary_owner",
    "owner_phone",
    "town_district",
    "effective_date",
    "expiry_date",
]

EXPIRED_REGISTRATION_COLUMNS = [
    "sca_rego_no",
    "hull_id_number",
    "craft_make",
    "craft_model",
    "primary_owner",
    "owner_phone",
    "effective_date",
    "expiry_date",
    "status",
]

INSPECTION_COLUMNS = [
    "inspection_id",
    "sca_rego_no",
    "hull_id_number",
    "inspection_type",
    "scheduled_date",
    "inspection_date",
    "inspector",
    "status",
    "overall_result",
    "follow_up_required",
    "reviewed_at",
]

INSPECTOR_MONITORING_COLUMNS = [
    "inspector",
    "email",
    "total_assigned",
    "scheduled",
    "in_progress",
    "pending_review",
    "passed",
    "failed",
    "cancelled",
    "last_inspection_date",
]

INFRINGEMENT_COLUMNS = [
    "infringement_id",
    "sca_rego_no",
    "hull_id_number",
    "infringement_date",
    "location_description",
    "items",
    "total_points",
    "issued_by",
    "status",
    "issued_at",
    "payment_due_date",
    "paid_at",
]

COMPLETED_INSPECTION_STATUSES = [
    InspectionStatus.PENDING_REVIEW.value,
    InspectionStatus.PASSED.value,
    InspectionStatus.FAILED.value,
]


def _registration_row(reg: Dict[str, Any]) -> Dict[str, Any]:
    owner = primary_owner(reg.get("owners")) or {}
    return {
        "sca_rego_no": reg.get("sca_rego_no") or "",
        "hull_id_number": reg.get("hull_id_number") or "",
        "craft_make": reg.get("craft_make") or "",
        "craft_model": reg.get("craft_model") or "",
        "craft_year": reg.get("craft_year") or "",
        "craft_color": reg.get("craft_color") or "",
        "vessel_type": reg.get("vessel_type") or "",
        "craft_use": reg.get("craft_use") or "",
        "primary_owner": owner_name(owner),
        "owner_phone": owner.get("phone") or "",
        "town_district": owner.get("town_district") or "",
        "effective_date": format_date(reg.get("effective_date")),
        "expiry_date": format_date(reg.get("expiry_date")),
        "status": reg.get("status") or "",
    }


def _user_label(user: Optional[Dict[str, Any]], fallback: Optional[str]) -> str:
    if user:
        return user.get("display_name") or user.get("email") or fallback or ""
    return fallback or ""


class ReportingService:
    """Build report rows and render them as CSV."""

    def __init__(self):
        self.db = None
        self.reports: Dict[str, Dict[str, Any]] = {
            "current_registrations": {
                "title": "Current Registrations",
                "columns": CURRENT_REGISTRATION_COLUMNS,
                "rows": self._current_registration_rows,
            },
            "expired_registrations": {
                "title": "Expired Registrations",
                "columns": EXPIRED_REGISTRATION_COLUMNS,
                "rows": self._expired_registration_rows,
            },
            "inspections_data": {
                "title": "Inspections Data",
                "columns": INSPECTION_COLUMNS,
                "rows": self._inspection_rows,
            },
            "inspector_monitoring": {
                "title": "Inspector Monitoring",
                "columns": INSPECTOR_MONITORING_COLUMNS,
                "rows": self._inspector_monitoring_rows,
            },
            "infringements": {
                "title": "Infringements",
                "columns": INFRINGEMENT_COLUMNS,
                "rows": self._infringement_rows,
            },
        }

    async def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    def list_reports(self) -> List[Dict[str, Any]]:
        return [
            {"report_type": key, "title": report_def["title"], "columns": list(report_def["columns"])}
            for key, report_def in self.reports.items()
        ]

    def resolve_columns(self, report_type: str, columns: Optional[List[str]] = None) -> List[str]:
        """Validate a requested column subset/order against the report's fixed set."""
        report_def = self.reports.get(report_type)
        if report_def is None:
            raise RecordNotFoundError("Report", report_type)
        if not columns:
            return list(report_def["columns"])

        unknown = [c for c in columns if c not in report_def["columns"]]
        if unknown:
            raise RecordValidationError(
                f"Unknown column(s) for {report_type}: {', '.join(unknown)}", field="columns"
            )
        if len(set(columns)) != len(columns):
            raise RecordValidationError("Columns may only be listed once", field="columns")
        return list(columns)

    async def build_rows(self, report_type: str) -> List[Dict[str, Any]]:
        report_def = self.reports.get(report_type)
        if report_def is None:
            raise RecordNotFoundError("Report", report_type)
        loader: Callable = report_def["rows"]
        return await loader()

    async def _users_by_id(self, user_ids) -> Dict[str, Dict[str, Any]]:
        db = await self._get_db()
        ids = [u for u in set(user_ids) if u]
        if not ids:
            return {}
        users = await db.users.find(
            {"user_id": {"$in": ids}},
            {"_id": 0, "user_id": 1, "display_name": 1, "email": 1}
        ).to_list(len(ids))
        return {u["user_id"]: u for u in users}

    async def _registrations_by_id(self, registration_ids) -> Dict[str, Dict[str, Any]]:
        db = await self._get_db()
        ids = [r for r in set(registration_ids) if r]
        if not ids:
            return {}
        regs = await db.registrations.find(
            {"registration_id": {"$in": ids}},
            {"_id": 0, "registration_id": 1, "sca_rego_no": 1, "hull_id_number": 1}
        ).to_list(len(ids))
        return {r["registration_id"]: r for r in regs}

    async def _current_registration_rows(self) -> List[Dict[str, Any]]:
        db = await self._get_db()
        regs = await db.registrations.find(
            {"status": RegistrationStatus.APPROVED.value},
            {"_id": 0}
        ).sort("sca_rego_no", 1).to_list(EXPORT_LIMIT)
        return [_registration_row(r) for r in regs]

    async def _expired_registration_rows(self) -> List[Dict[str, Any]]:
        db = await self._get_db()
        regs = await db.registrations.find(
            {"status": RegistrationStatus.EXPIRED.value},
            {"_id": 0}
        ).sort("expiry_date", -1).to_list(EXPORT_LIMIT)
        return [_registration_row(r) for r in regs]

    async def _inspection_rows(self) -> List[Dict[str, Any]]:
        db = await self._get_db()
        inspections = await db.inspections.find(
            {"status": {"$in": COMPLETED_INSPECTION_STATUSES}},
            {"_id": 0, "checklist_items": 0}
        ).sort("inspection_date", -1).to_list(EXPORT_LIMIT)

        reg_map = await self._registrations_by_id(ref_id(i.get("registration_ref")) for i in inspections)
        user_map = await self._users_by_id(ref_id(i.get("inspector_ref")) for i in inspections)

        rows = []
        for insp in inspections:
            reg = reg_map.get(ref_id(insp.get("registration_ref")), {})
            inspector_id = ref_id(insp.get("inspector_ref"))
            rows.append({
                "inspection_id": insp.get("inspection_id"),
                "sca_rego_no": reg.get("sca_rego_no") or "",
                "hull_id_number": reg.get("hull_id_number") or "",
                "inspection_type": insp.get("inspection_type") or "",
                "scheduled_date": format_date(insp.get("scheduled_date")),
                "inspection_date": format_date(insp.get("inspection_date")),
                "inspector": _user_label(user_map.get(inspector_id), inspector_id),
                "status": insp.get("status") or "",
                "overall_result": insp.get("overall_result") or "",
                "follow_up_required": "Yes" if insp.get("follow_up_required") else "No",
                "reviewed_at": format_date(insp.get("reviewed_at")),
            })
        return rows

    async def _inspector_monitoring_rows(self) -> List[Dict[str, Any]]:
        db = await self._get_db()
        inspections = await db.inspections.find(
            {},
            {"_id": 0, "inspector_ref": 1, "status": 1, "inspection_date": 1}
        ).to_list(EXPORT_LIMIT)

        status_columns = {
            InspectionStatus.SCHEDULED.value: "scheduled",
            InspectionStatus.IN_PROGRESS.value: "in_progress",
            InspectionStatus.PENDING_REVIEW.value: "pending_review",
            InspectionStatus.PASSED.value: "passed",
            InspectionStatus.FAILED.value: "failed",
            InspectionStatus.CANCELLED.value: "cancelled",
        }

        stats: Dict[str, Dict[str, Any]] = {}
        for insp in inspections:
            inspector_id = ref_id(insp.get("inspector_ref"))
            if not inspector_id:
                continue
            entry = stats.setdefault(inspector_id, {
                "total_assigned": 0,
                **{col: 0 for col in status_columns.values()},
                "last_inspection": None,
            })
            entry["total_assigned"] += 1
            column = status_columns.get(insp.get("status"))
            if column:
                entry[column] += 1
            inspected = normalize_timestamp(insp.get("inspection_date"))
            if inspected and (entry["last_inspection"] is None or inspected > entry["last_inspection"]):
                entry["last_inspection"] = inspected

        user_map = await self._users_by_id(stats.keys())
        rows = []
        for inspector_id, entry in stats.items():
            user = user_map.get(inspector_id)
            row = {
                "inspector": _user_label(user, inspector_id),
                "email": (user or {}).get("email") or "",
                "last_inspection_date": format_date(entry.pop("last_inspection")),
            }
            row.update(entry)
            rows.append(row)
        rows.sort(key=lambda r: r["inspector"].lower())
        return rows

    async def _infringement_rows(self) -> List[Dict[str, Any]]:
        db = await self._get_db()
        infringements = await db.infringements.find(
            {"status": {"$ne": InfringementStatus.DRAFT.value}},
            {"_id": 0}
        ).sort("infringement_date", -1).to_list(EXPORT_LIMIT)

        user_map = await self._users_by_id(ref_id(i.get("issued_by_ref")) for i in infringements)

        rows = []
        for inf in infringements:
            reg = inf.get("registration_data") or {}
            issuer_id = ref_id(inf.get("issued_by_ref"))
            issuer_fallback = (inf.get("issued_by_data") or {}).get("display_name") or issuer_id
            rows.append({
                "infringement_id": inf.get("infringement_id"),
                "sca_rego_no": reg.get("sca_rego_no") or "",
                "hull_id_number": reg.get("hull_id_number") or "",
                "infringement_date": format_date(inf.get("infringement_date")),
                "location_description": inf.get("location_description") or "",
                "items": "; ".join(
                    item.get("description") or item.get("item_id") or ""
                    for item in inf.get("infringement_items") or []
                ),
                "total_points": inf.get("total_points") or 0,
                "issued_by": _user_label(user_map.get(issuer_id), issuer_fallback),
                "status": inf.get("status") or "",
                "issued_at": format_date(inf.get("issued_at")),
                "payment_due_date": format_date(inf.get("payment_due_date")),
                "paid_at": format_date(inf.get("paid_at")),
            })
        return rows

    def render_csv(self, rows: List[Dict[str, Any]], columns: List[str]) -> str:
        """Header row of column keys, then one line per row; quoting per RFC 4180."""
        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=columns, extrasaction="ignore", lineterminator="\n")
        writer.writeheader()
        for row in rows:
            writer.writerow({c: "" if row.get(c) is None else row.get(c) for c in columns})
        return output.getvalue()

    async def export_report(
        self,
        ctx: RequestContext,
        report_type: str,
        columns: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Export a report as CSV.

        Raises NoDataToExport when the report matches no records.
        """
        selected = self.resolve_columns(report_type, columns)
        rows = await self.build_rows(report_type)
        if not rows:
            logger.info(f"Report {report_type} requested by {ctx.label}: no data")
            raise NoDataToExport(report_type)

        content = self.render_csv(rows, selected)

        await create_audit_log(
            action=AuditAction.REPORT_EXPORTED,
            actor_role=ctx.role,
            actor_id=ctx.user_id,
            resource_type="report",
            resource_id=report_type,
            metadata={"columns": selected, "row_count": len(rows)},
        )
        logger.info(f"Report {report_type} exported by {ctx.label}: {len(rows)} rows")

        return {
            "content": content,
            "filename": f"{report_type}_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}.csv",
            "content_type": "text/csv",
            "row_count": len(rows),
        }


# Singleton instance
reporting_service = ReportingService()
