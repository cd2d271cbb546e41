"""Reporting Routes - Export registry data as CSV."""
from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from middleware import RequestContext, registry_route_guard
from services.reporting_service import reporting_service
from typing import List, Optional
import io
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/reports", tags=["reports"])


def _parse_columns(columns: Optional[List[str]]) -> Optional[List[str]]:
    """Accept repeated ?columns=a&columns=b as well as ?columns=a,b."""
    if not columns:
        return None
    parsed = [c.strip() for value in columns for c in value.split(",") if c.strip()]
    return parsed or None


@router.get("/available")
async def get_available_reports(ctx: RequestContext = Depends(registry_route_guard)):
    """Report types with their full column sets."""
    return {"reports": reporting_service.list_reports()}


@router.get("/{report_type}/export")
async def export_report(
    report_type: str,
    columns: Optional[List[str]] = Query(default=None),
    ctx: RequestContext = Depends(registry_route_guard),
):
    """
    Export a report as a CSV download.

    `columns` selects and orders a subset of the report's columns. When the
    report matches no records a JSON "no data" notice is returned instead.
    """
    result = await reporting_service.export_report(ctx, report_type, _parse_columns(columns))
    return StreamingResponse(
        io.StringIO(result["content"]),
        media_type=result["content_type"],
        headers={
            "Content-Disposition": f"attachment; filename={result['filename']}"
        }
    )
