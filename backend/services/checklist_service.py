"""
Inspection checklist handling.

A checklist is an ordered list of {item_id, item_description, result, comments,
category}. It is seeded from the active template for the inspection type when
the inspection is created, and can only change while the inspection is
InProgress. Results are overwritten in place; no history is kept and no
overall result is derived from them.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from database import database
from middleware import RequestContext
from models import (
    AuditAction,
    ChecklistItem,
    ChecklistItemCreate,
    ChecklistResult,
    ChecklistResultUpdate,
    EntityType,
    InspectionStatus,
    InspectionType,
)
from services.record_workflow import RecordAction, check_transition
from services.transitions import assignee_of, load_record
from utils.audit import create_audit_log
from utils.errors import ChecklistLockedError, RecordNotFoundError
from utils.references import to_dbref

logger = logging.getLogger(__name__)


def _template(template_id: str, name: str, inspection_type: InspectionType, items: List[tuple]) -> Dict[str, Any]:
    return {
        "template_id": template_id,
        "name": name,
        "inspection_type": inspection_type.value,
        "items": [
            {"item_id": item_id, "item_description": description, "category": category, "order": order}
            for order, (item_id, description, category) in enumerate(items, start=1)
        ],
        "is_active": True,
    }


DEFAULT_CHECKLIST_TEMPLATES: List[Dict[str, Any]] = [
    _template("tpl_initial_default", "Initial Inspection Checklist", InspectionType.INITIAL, [
        ("tpl_chk01", "Hull Integrity Check", "Hull"),
        ("tpl_chk02", "Life Jackets (min quantity & condition)", "Safety Gear"),
        ("tpl_chk03", "Fire Extinguisher (charged & accessible)", "Safety Gear"),
        ("tpl_chk04", "Navigation Lights", "Electrical"),
        ("tpl_chk05", "Anchor and Rode", "Equipment"),
        ("tpl_chk06", "First Aid Kit", "Safety Gear"),
        ("tpl_chk07", "Bilge Pump/Bailing Device", "Equipment"),
        ("tpl_chk08", "Sound Producing Device (Horn/Whistle)", "Safety Gear"),
    ]),
    _template("tpl_annual_default", "Annual Inspection Checklist", InspectionType.ANNUAL, [
        ("tpl_annual_01", "Verify Registration Documents", "Documentation"),
        ("tpl_annual_02", "Check Engine Condition", "Engine"),
        ("tpl_annual_03", "Inspect Steering System", "Mechanical"),
    ]),
]


async def get_template_items(inspection_type: InspectionType) -> List[Dict[str, Any]]:
    """Checklist items for a new inspection, taken from the active template.

    Falls back to the built-in templates when the collection has none; types
    without any template start with an empty checklist.
    """
    db = database.get_db()
    template = await db.checklistTemplates.find_one(
        {"inspection_type": inspection_type.value, "is_active": True},
        {"_id": 0}
    )
    if not template:
        template = next(
            (t for t in DEFAULT_CHECKLIST_TEMPLATES if t["inspection_type"] == inspection_type.value),
            None
        )
    if not template:
        return []

    items = sorted(template.get("items", []), key=lambda i: i.get("order", 0))
    return [
        ChecklistItem(
            item_id=item["item_id"],
            item_description=item["item_description"],
            category=item.get("category"),
            result=ChecklistResult.NOT_APPLICABLE,
        ).model_dump(mode="json")
        for item in items
    ]


async def load_editable_inspection(ctx: RequestContext, inspection_id: str) -> Dict[str, Any]:
    """Inspection whose checklist ctx may change now, else ChecklistLockedError or TransitionNotAllowedError."""
    inspection = await load_record(EntityType.INSPECTION, inspection_id)
    if inspection.get("status") != InspectionStatus.IN_PROGRESS.value:
        raise ChecklistLockedError(inspection_id, inspection.get("status"))
    check_transition(
        EntityType.INSPECTION,
        inspection["status"],
        RecordAction.RECORD_CHECKLIST,
        ctx.role,
        actor_id=ctx.user_id,
        assignee_id=assignee_of(EntityType.INSPECTION, inspection),
    )
    return inspection


def _touch(ctx: RequestContext) -> Dict[str, Any]:
    return {
        "last_updated_at": datetime.now(timezone.utc),
        "last_updated_by_ref": to_dbref("users", ctx.user_id),
    }


async def add_checklist_items(
    ctx: RequestContext,
    inspection_id: str,
    items: List[ChecklistItemCreate],
    source: str = "manual",
) -> List[Dict[str, Any]]:
    """Append items to an InProgress inspection's checklist. Returns the new checklist."""
    inspection = await load_editable_inspection(ctx, inspection_id)
    new_items = [ChecklistItem(**item.model_dump()).model_dump(mode="json") for item in items]
    if not new_items:
        return inspection.get("checklist_items", [])

    db = database.get_db()
    await db.inspections.update_one(
        {"inspection_id": inspection_id},
        {
            "$push": {"checklist_items": {"$each": new_items}},
            "$set": _touch(ctx),
        }
    )

    await create_audit_log(
        action=AuditAction.CHECKLIST_AI_SUGGESTED if source == "ai" else AuditAction.CHECKLIST_UPDATED,
        actor_role=ctx.role,
        actor_id=ctx.user_id,
        resource_type=EntityType.INSPECTION.value,
        resource_id=inspection_id,
        metadata={"added_items": [i["item_description"] for i in new_items], "source": source},
    )
    logger.info(f"Inspection {inspection_id}: {len(new_items)} checklist item(s) added ({source})")
    return inspection.get("checklist_items", []) + new_items


async def set_item_result(
    ctx: RequestContext,
    inspection_id: str,
    item_id: str,
    update: ChecklistResultUpdate,
) -> Dict[str, Any]:
    """Overwrite one item's result and comments. Returns the updated item."""
    inspection = await load_editable_inspection(ctx, inspection_id)
    existing = next(
        (i for i in inspection.get("checklist_items", []) if i.get("item_id") == item_id),
        None
    )
    if existing is None:
        raise RecordNotFoundError("Checklist item", item_id)

    db = database.get_db()
    await db.inspections.update_one(
        {"inspection_id": inspection_id, "checklist_items.item_id": item_id},
        {"$set": {
            "checklist_items.$.result": update.result.value,
            "checklist_items.$.comments": update.comments,
            **_touch(ctx),
        }}
    )

    await create_audit_log(
        action=AuditAction.CHECKLIST_UPDATED,
        actor_role=ctx.role,
        actor_id=ctx.user_id,
        resource_type=EntityType.INSPECTION.value,
        resource_id=inspection_id,
        before_state={"result": existing.get("result")},
        after_state={"result": update.result.value},
        metadata={"item_id": item_id},
    )
    return {**existing, "result": update.result.value, "comments": update.comments}


def merge_suggestions(existing: List[Dict[str, Any]], suggestions: List[str]) -> List[ChecklistItemCreate]:
    """Suggestions not already on the checklist, compared case-insensitively."""
    seen = {str(i.get("item_description", "")).strip().lower() for i in existing}
    fresh: List[ChecklistItemCreate] = []
    for text in suggestions:
        cleaned = text.strip()
        key = cleaned.lower()
        if not cleaned or key in seen:
            continue
        seen.add(key)
        fresh.append(ChecklistItemCreate(item_description=cleaned, category="AI Suggested"))
    return fresh


async def apply_ai_suggestions(
    ctx: RequestContext,
    inspection_id: str,
    suggestions: List[str],
) -> Optional[List[Dict[str, Any]]]:
    inspection = await load_editable_inspection(ctx, inspection_id)
    fresh = merge_suggestions(inspection.get("checklist_items", []), suggestions)
    return await add_checklist_items(ctx, inspection_id, fresh, source="ai")
