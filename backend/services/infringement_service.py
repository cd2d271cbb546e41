"""
Infringement service.

Infringement notices are drafted or issued in the field against a registered
craft, carry point-valued items from a fixed catalogue, and are then approved,
paid, voided or (by the expiry sweep) marked Overdue.
"""
import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import logging

from database import database
from middleware import RequestContext
from models import (
    AuditAction,
    EntityType,
    InfringementCreate,
    InfringementItemSelection,
    InfringementStatus,
    PaymentDetails,
    UserRole,
    to_document,
)
from services.projections import registration_summary, resolve_registration, resolve_user, to_public
from services.record_workflow import RecordAction, allowed_actions
from services.transitions import apply_action, load_record
from utils.audit import create_audit_log
from utils.errors import RecordNotFoundError, RecordValidationError
from utils.references import ref_id, ref_match_query, to_dbref

logger = logging.getLogger(__name__)

INFRINGEMENT_PAYMENT_DAYS = int(os.getenv("INFRINGEMENT_PAYMENT_DAYS", "28"))

INFRINGEMENT_CATALOGUE: Dict[str, Dict[str, Any]] = {
    "UNREG_CRAFT": {"description": "Operating an unregistered craft", "points": 30},
    "NO_SAFETY_EQUIP": {"description": "Insufficient/no safety equipment on board", "points": 20},
    "OVERLOADING": {"description": "Overloading the craft (exceeding capacity)", "points": 25},
    "RECKLESS_OP": {"description": "Reckless operation of craft", "points": 40},
    "SPEEDING_ZONE": {"description": "Speeding in a restricted zone", "points": 10},
    "NO_LICENSE": {"description": "Operating without a valid license (if required)", "points": 30},
    "ENV_POLLUTION": {"description": "Discharging pollutants into water", "points": 50},
    "FAIL_COMPLY_DIRECTION": {"description": "Failing to comply with lawful direction", "points": 15},
    "IMPROPER_MARKINGS": {"description": "Improper craft markings/identification", "points": 10},
}


def catalogue_items() -> List[Dict[str, Any]]:
    return [{"item_id": item_id, **entry} for item_id, entry in INFRINGEMENT_CATALOGUE.items()]


def build_items(selections: List[InfringementItemSelection]) -> List[Dict[str, Any]]:
    """Expand selected catalogue ids into stored items. Unknown or repeated ids are rejected."""
    items = []
    seen = set()
    for selection in selections:
        entry = INFRINGEMENT_CATALOGUE.get(selection.item_id)
        if entry is None:
            raise RecordValidationError(f"Unknown infringement item: {selection.item_id}", field="items")
        if selection.item_id in seen:
            raise RecordValidationError(f"Infringement item listed twice: {selection.item_id}", field="items")
        seen.add(selection.item_id)
        items.append({
            "item_id": selection.item_id,
            "description": entry["description"],
            "points": entry["points"],
            "notes": selection.notes,
        })
    return items


def total_points(items: List[Dict[str, Any]]) -> int:
    return sum(int(item.get("points") or 0) for item in items)


def issuer_of(doc: Dict[str, Any]) -> Optional[str]:
    return ref_id(doc.get("issued_by_ref")) or ref_id(doc.get("issued_by_data"))


def present_infringement(ctx: RequestContext, doc: Dict[str, Any]) -> Dict[str, Any]:
    public = to_public(doc)
    public["allowed_actions"] = [
        a.value for a in allowed_actions(EntityType.INFRINGEMENT, doc.get("status"), ctx.role, ctx.user_id)
    ]
    return public


async def create_infringement(ctx: RequestContext, data: InfringementCreate) -> Dict[str, Any]:
    """Record an infringement as Draft, or Issued straight away when issue_now is set."""
    db = database.get_db()
    registration = await load_record(EntityType.REGISTRATION, data.registration_id)
    items = build_items(data.items)

    now = datetime.now(timezone.utc)
    actor_ref = to_dbref("users", ctx.user_id)
    doc = {
        "infringement_id": str(uuid.uuid4()),
        "registration_ref": to_dbref("registrations", data.registration_id),
        "registration_data": {"id": data.registration_id, **registration_summary(registration)},
        "issued_by_ref": actor_ref,
        "issued_by_data": {"id": ctx.user_id, "display_name": ctx.label},
        "infringement_date": data.infringement_date,
        "location_description": data.location_description,
        "infringement_items": items,
        "total_points": total_points(items),
        "officer_notes": data.officer_notes,
        "status": InfringementStatus.DRAFT.value,
        "issued_at": None,
        "payment_due_date": None,
        "payment_details": None,
        "created_at": now,
        "created_by_ref": actor_ref,
        "last_updated_at": now,
        "last_updated_by_ref": actor_ref,
    }

    await db.infringements.insert_one(doc)
    doc.pop("_id", None)

    await create_audit_log(
        action=AuditAction.RECORD_CREATED,
        actor_role=ctx.role,
        actor_id=ctx.user_id,
        resource_type=EntityType.INFRINGEMENT.value,
        resource_id=doc["infringement_id"],
        metadata={"registration_id": data.registration_id, "total_points": doc["total_points"]},
    )
    logger.info(f"Infringement recorded: {doc['infringement_id']} ({doc['total_points']} points)")

    if data.issue_now:
        return await issue_infringement(ctx, doc["infringement_id"], record=doc)
    return doc


async def update_infringement(ctx: RequestContext, infringement_id: str, data: InfringementCreate) -> Dict[str, Any]:
    """Edit a Draft infringement; items and points are recomputed from the catalogue."""
    items = build_items(data.items)
    fields: Dict[str, Any] = {
        "infringement_date": data.infringement_date,
        "location_description": data.location_description,
        "infringement_items": items,
        "total_points": total_points(items),
        "officer_notes": data.officer_notes,
    }
    existing = await load_record(EntityType.INFRINGEMENT, infringement_id)
    if data.registration_id:
        registration = await load_record(EntityType.REGISTRATION, data.registration_id)
        fields["registration_ref"] = to_dbref("registrations", data.registration_id)
        fields["registration_data"] = {"id": data.registration_id, **registration_summary(registration)}
    return await apply_action(
        ctx, EntityType.INFRINGEMENT, infringement_id, RecordAction.EDIT, fields=fields, record=existing
    )


async def list_infringements(
    ctx: RequestContext,
    status: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
) -> List[Dict[str, Any]]:
    """List infringements; inspector-only users see only notices they issued."""
    db = database.get_db()
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if ctx.has_role(UserRole.INSPECTOR):
        query.update(ref_match_query("issued_by_ref", "users", ctx.user_id))

    docs = await db.infringements.find(query, {"_id": 0}).sort("created_at", -1).skip(skip).limit(limit).to_list(length=limit)
    return [present_infringement(ctx, d) for d in docs]


async def get_infringement_detail(ctx: RequestContext, infringement_id: str) -> Dict[str, Any]:
    """Infringement with live registration and issuer projections.

    The embedded registration_data/issued_by_data snapshots are kept as written;
    the live projections sit alongside them.
    """
    db = database.get_db()
    infringement = await load_record(EntityType.INFRINGEMENT, infringement_id)
    if ctx.has_role(UserRole.INSPECTOR) and issuer_of(infringement) != ctx.user_id:
        raise RecordNotFoundError("Infringement", infringement_id)

    registration, issued_by, approved_by = await asyncio.gather(
        resolve_registration(db, infringement.get("registration_ref") or infringement.get("registration_data")),
        resolve_user(db, infringement.get("issued_by_ref") or infringement.get("issued_by_data")),
        resolve_user(db, infringement.get("approved_by_ref")),
    )
    result = present_infringement(ctx, infringement)
    result["registration"] = registration
    result["issued_by"] = issued_by
    result["approved_by"] = approved_by
    return result


async def issue_infringement(
    ctx: RequestContext,
    infringement_id: str,
    record: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    return await apply_action(
        ctx, EntityType.INFRINGEMENT, infringement_id, RecordAction.ISSUE,
        fields={"payment_due_date": now + timedelta(days=INFRINGEMENT_PAYMENT_DAYS)},
        record=record,
    )


async def start_review(ctx: RequestContext, infringement_id: str) -> Dict[str, Any]:
    return await apply_action(ctx, EntityType.INFRINGEMENT, infringement_id, RecordAction.REVIEW)


async def approve_infringement(ctx: RequestContext, infringement_id: str) -> Dict[str, Any]:
    """Approve an Issued or PendingReview notice.

    Unconditional write: two officers approving at once both succeed.
    """
    return await apply_action(ctx, EntityType.INFRINGEMENT, infringement_id, RecordAction.APPROVE)


async def mark_paid(ctx: RequestContext, infringement_id: str, payment: PaymentDetails) -> Dict[str, Any]:
    return await apply_action(
        ctx, EntityType.INFRINGEMENT, infringement_id, RecordAction.MARK_PAID,
        fields={"payment_details": to_document(payment)},
    )


async def void_infringement(ctx: RequestContext, infringement_id: str, reason: str) -> Dict[str, Any]:
    if not reason or not reason.strip():
        raise RecordValidationError("A reason is required to void an infringement", field="reason")
    return await apply_action(
        ctx, EntityType.INFRINGEMENT, infringement_id, RecordAction.VOID, reason=reason.strip()
    )
