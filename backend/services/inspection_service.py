"""
Inspection service.

Inspections are scheduled against a registration with an assigned inspector,
started and completed by that inspector (or a manager), then reviewed to
Passed or Failed. Listing resolves each inspection's registration and
inspector references concurrently; an unresolvable reference only degrades
that row.
"""
import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from database import database
from middleware import RequestContext
from models import (
    AuditAction,
    CompleteInspectionRequest,
    EntityType,
    InspectionCreate,
    InspectionScheduleUpdate,
    InspectionStatus,
    UserRole,
)
from services.checklist_service import apply_ai_suggestions, get_template_items, load_editable_inspection
from services.checklist_suggestions import (
    SuggestChecklistItemsInput,
    registration_history_summary,
    suggest_checklist_items,
)
from services.projections import resolve_registration, resolve_user, to_public
from services.record_workflow import RecordAction, allowed_actions
from services.transitions import apply_action, assignee_of, load_record
from utils.audit import create_audit_log
from utils.errors import RecordNotFoundError, RecordValidationError
from utils.references import ref_id, ref_match_query, to_dbref

logger = logging.getLogger(__name__)


def is_inspector_only(ctx: RequestContext) -> bool:
    return ctx.has_role(UserRole.INSPECTOR)


def present_inspection(ctx: RequestContext, doc: Dict[str, Any]) -> Dict[str, Any]:
    public = to_public(doc)
    public["allowed_actions"] = [
        a.value for a in allowed_actions(
            EntityType.INSPECTION,
            doc.get("status"),
            ctx.role,
            actor_id=ctx.user_id,
            assignee_id=assignee_of(EntityType.INSPECTION, doc),
        )
    ]
    return public


async def _require_user(db, user_id: str) -> Dict[str, Any]:
    user = await db.users.find_one({"user_id": user_id}, {"_id": 0, "password_hash": 0})
    if not user:
        raise RecordNotFoundError("User", user_id)
    return user


async def create_inspection(ctx: RequestContext, data: InspectionCreate) -> Dict[str, Any]:
    """Schedule an inspection; the checklist starts from the type's template."""
    db = database.get_db()

    registration = await load_record(EntityType.REGISTRATION, data.registration_id)
    inspector_id = data.inspector_id
    if inspector_id:
        await _require_user(db, inspector_id)
    elif is_inspector_only(ctx):
        inspector_id = ctx.user_id

    now = datetime.now(timezone.utc)
    actor_ref = to_dbref("users", ctx.user_id)
    doc = {
        "inspection_id": str(uuid.uuid4()),
        "registration_ref": to_dbref("registrations", registration["registration_id"]),
        "inspector_ref": to_dbref("users", inspector_id) if inspector_id else None,
        "inspection_type": data.inspection_type.value,
        "scheduled_date": data.scheduled_date,
        "inspection_date": None,
        "status": InspectionStatus.SCHEDULED.value,
        "overall_result": None,
        "findings": None,
        "corrective_actions": None,
        "follow_up_required": data.follow_up_required,
        "checklist_items": await get_template_items(data.inspection_type),
        "created_at": now,
        "created_by_ref": actor_ref,
        "last_updated_at": now,
        "last_updated_by_ref": actor_ref,
    }

    await db.inspections.insert_one(doc)
    doc.pop("_id", None)

    await create_audit_log(
        action=AuditAction.RECORD_CREATED,
        actor_role=ctx.role,
        actor_id=ctx.user_id,
        resource_type=EntityType.INSPECTION.value,
        resource_id=doc["inspection_id"],
        metadata={"registration_id": registration["registration_id"], "inspector_id": inspector_id},
    )
    logger.info(f"Inspection scheduled: {doc['inspection_id']} for registration {registration['registration_id']}")
    return doc


async def _with_references(db, doc: Dict[str, Any]) -> Dict[str, Any]:
    registration, inspector = await asyncio.gather(
        resolve_registration(db, doc.get("registration_ref")),
        resolve_user(db, doc.get("inspector_ref")),
    )
    doc = dict(doc)
    doc["registration"] = registration
    doc["inspector"] = inspector
    return doc


async def list_inspections(
    ctx: RequestContext,
    status: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
) -> List[Dict[str, Any]]:
    """List inspections; inspector-only users see only their own assignments."""
    db = database.get_db()
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if is_inspector_only(ctx):
        query.update(ref_match_query("inspector_ref", "users", ctx.user_id))

    docs = await db.inspections.find(
        query, {"_id": 0, "checklist_items": 0}
    ).sort("scheduled_date", -1).skip(skip).limit(limit).to_list(length=limit)

    enriched = await asyncio.gather(*(_with_references(db, d) for d in docs))
    return [present_inspection(ctx, d) for d in enriched]


async def get_inspection_detail(ctx: RequestContext, inspection_id: str) -> Dict[str, Any]:
    db = database.get_db()
    inspection = await load_record(EntityType.INSPECTION, inspection_id)
    if is_inspector_only(ctx) and assignee_of(EntityType.INSPECTION, inspection) != ctx.user_id:
        # Not assigned: indistinguishable from missing for inspector-only users
        raise RecordNotFoundError("Inspection", inspection_id)

    enriched = await _with_references(db, inspection)
    result = present_inspection(ctx, enriched)
    result["reviewed_by"] = await resolve_user(db, inspection.get("reviewed_by_ref"))
    return result


async def start_inspection(ctx: RequestContext, inspection_id: str) -> Dict[str, Any]:
    return await apply_action(
        ctx, EntityType.INSPECTION, inspection_id, RecordAction.START,
        fields={"inspection_date": datetime.now(timezone.utc)},
    )


async def update_schedule(ctx: RequestContext, inspection_id: str, data: InspectionScheduleUpdate) -> Dict[str, Any]:
    db = database.get_db()
    fields: Dict[str, Any] = {}
    if data.inspector_id is not None:
        await _require_user(db, data.inspector_id)
        fields["inspector_ref"] = to_dbref("users", data.inspector_id)
    if data.inspection_type is not None:
        fields["inspection_type"] = data.inspection_type.value
    if data.scheduled_date is not None:
        fields["scheduled_date"] = data.scheduled_date
    if not fields:
        raise RecordValidationError("No schedule fields supplied")
    return await apply_action(ctx, EntityType.INSPECTION, inspection_id, RecordAction.EDIT_SCHEDULE, fields=fields)


async def complete_inspection(
    ctx: RequestContext,
    inspection_id: str,
    request: CompleteInspectionRequest,
) -> Dict[str, Any]:
    """Complete an InProgress inspection; it then awaits review.

    overall_result is set by the inspector and never derived from item results.
    """
    if request.overall_result is None:
        raise RecordValidationError("Overall result is required to complete an inspection", field="overall_result")

    fields: Dict[str, Any] = {"overall_result": request.overall_result.value}
    if request.findings is not None:
        fields["findings"] = request.findings
    if request.corrective_actions is not None:
        fields["corrective_actions"] = request.corrective_actions
    if request.follow_up_required is not None:
        fields["follow_up_required"] = request.follow_up_required

    return await apply_action(ctx, EntityType.INSPECTION, inspection_id, RecordAction.COMPLETE, fields=fields)


async def review_inspection(
    ctx: RequestContext,
    inspection_id: str,
    approve: bool,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    action = RecordAction.APPROVE if approve else RecordAction.REJECT
    fields = {"review_notes": notes} if notes else None
    return await apply_action(ctx, EntityType.INSPECTION, inspection_id, action, fields=fields)


async def cancel_inspection(ctx: RequestContext, inspection_id: str, reason: str) -> Dict[str, Any]:
    return await apply_action(ctx, EntityType.INSPECTION, inspection_id, RecordAction.CANCEL, reason=reason)


async def suggest_items_for_inspection(ctx: RequestContext, inspection_id: str) -> Dict[str, Any]:
    """Ask the model for checklist items and append the ones not already present.

    The caller must be allowed to record the checklist before the model is called.
    """
    db = database.get_db()
    inspection = await load_editable_inspection(ctx, inspection_id)
    registration_id = ref_id(inspection.get("registration_ref"))
    registration = None
    if registration_id:
        registration = await db.registrations.find_one({"registration_id": registration_id}, {"_id": 0})
    if not registration:
        raise RecordValidationError("Inspection has no resolvable registration to base suggestions on")

    previous = await db.inspections.find(
        ref_match_query("registration_ref", "registrations", registration_id),
        {"_id": 0, "inspection_type": 1, "overall_result": 1}
    ).sort("scheduled_date", -1).to_list(length=10)

    suggestions = await suggest_checklist_items(SuggestChecklistItemsInput(
        craft_make=registration.get("craft_make") or "Unknown",
        craft_model=registration.get("craft_model") or "Unknown",
        craft_year=registration.get("craft_year"),
        craft_type=registration.get("vessel_type") or "Unknown",
        registration_history=registration_history_summary(registration, previous),
    ))

    checklist = await apply_ai_suggestions(ctx, inspection_id, suggestions)
    return {"suggestions": suggestions, "checklist_items": checklist}
