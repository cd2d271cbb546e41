from fastapi import APIRouter, Depends
from typing import List, Optional
from middleware import RequestContext, get_request_context, require_roles
from models import (
    ChecklistItemCreate,
    ChecklistResultUpdate,
    CompleteInspectionRequest,
    InspectionCreate,
    InspectionScheduleUpdate,
    ReasonRequest,
    ReviewDecisionRequest,
    UserRole,
)
from services import checklist_service, inspection_service
from services.inspection_service import present_inspection
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/inspections", tags=["inspections"])

inspection_create_guard = require_roles([
    UserRole.ADMIN, UserRole.REGISTRAR, UserRole.SUPERVISOR, UserRole.INSPECTOR,
])


@router.get("")
async def list_inspections(
    status: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
    ctx: RequestContext = Depends(get_request_context),
):
    inspections = await inspection_service.list_inspections(ctx, status=status, limit=limit, skip=skip)
    return {"inspections": inspections, "total": len(inspections)}


@router.post("", status_code=201)
async def create_inspection(data: InspectionCreate, ctx: RequestContext = Depends(inspection_create_guard)):
    doc = await inspection_service.create_inspection(ctx, data)
    return present_inspection(ctx, doc)


@router.get("/{inspection_id}")
async def get_inspection(inspection_id: str, ctx: RequestContext = Depends(get_request_context)):
    return await inspection_service.get_inspection_detail(ctx, inspection_id)


@router.post("/{inspection_id}/start")
async def start_inspection(inspection_id: str, ctx: RequestContext = Depends(get_request_context)):
    doc = await inspection_service.start_inspection(ctx, inspection_id)
    return present_inspection(ctx, doc)


@router.patch("/{inspection_id}/schedule")
async def update_schedule(
    inspection_id: str,
    data: InspectionScheduleUpdate,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await inspection_service.update_schedule(ctx, inspection_id, data)
    return present_inspection(ctx, doc)


@router.post("/{inspection_id}/checklist")
async def add_checklist_items(
    inspection_id: str,
    items: List[ChecklistItemCreate],
    ctx: RequestContext = Depends(get_request_context),
):
    checklist = await checklist_service.add_checklist_items(ctx, inspection_id, items)
    return {"checklist_items": checklist}


@router.put("/{inspection_id}/checklist/{item_id}")
async def set_checklist_item_result(
    inspection_id: str,
    item_id: str,
    update: ChecklistResultUpdate,
    ctx: RequestContext = Depends(get_request_context),
):
    """Record Yes/No/N/A and comments for one checklist item (InProgress only)."""
    return await checklist_service.set_item_result(ctx, inspection_id, item_id, update)


@router.post("/{inspection_id}/checklist/suggest")
async def suggest_checklist_items(inspection_id: str, ctx: RequestContext = Depends(get_request_context)):
    """Append model-suggested checklist items; duplicates of existing items are skipped."""
    return await inspection_service.suggest_items_for_inspection(ctx, inspection_id)


@router.post("/{inspection_id}/complete")
async def complete_inspection(
    inspection_id: str,
    body: CompleteInspectionRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await inspection_service.complete_inspection(ctx, inspection_id, body)
    return present_inspection(ctx, doc)


@router.post("/{inspection_id}/approve")
async def approve_inspection(
    inspection_id: str,
    body: Optional[ReviewDecisionRequest] = None,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await inspection_service.review_inspection(ctx, inspection_id, True, body.notes if body else None)
    return present_inspection(ctx, doc)


@router.post("/{inspection_id}/reject")
async def reject_inspection(
    inspection_id: str,
    body: Optional[ReviewDecisionRequest] = None,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await inspection_service.review_inspection(ctx, inspection_id, False, body.notes if body else None)
    return present_inspection(ctx, doc)


@router.post("/{inspection_id}/cancel")
async def cancel_inspection(
    inspection_id: str,
    body: ReasonRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await inspection_service.cancel_inspection(ctx, inspection_id, body.reason)
    return present_inspection(ctx, doc)
