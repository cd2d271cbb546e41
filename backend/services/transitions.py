"""
Status transitions for all record families.

apply_action is the only function that changes a record's status. It re-reads
the record, runs the decision table against the status it finds, then writes
the new status with one unconditional $set. There is no version check: two
permitted actors acting at once both succeed and the later write wins.
"""
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
import logging

from database import database, id_field_for
from middleware import RequestContext
from models import AuditAction, EntityType
from services.record_workflow import ENTITY_LABELS, RecordAction, check_transition
from utils.audit import create_audit_log
from utils.errors import RecordNotFoundError
from utils.references import ref_id, to_dbref

logger = logging.getLogger(__name__)

ENTITY_COLLECTIONS: Dict[EntityType, str] = {
    EntityType.REGISTRATION: "registrations",
    EntityType.INSPECTION: "inspections",
    EntityType.OPERATOR_LICENSE: "operatorLicenseApplications",
    EntityType.INFRINGEMENT: "infringements",
}

# Reference field naming the record's assignee, where the family has one
ASSIGNEE_FIELDS: Dict[EntityType, str] = {
    EntityType.INSPECTION: "inspector_ref",
}

# action -> (timestamp field, actor field)
ACTION_STAMPS: Dict[RecordAction, Tuple[str, Optional[str]]] = {
    RecordAction.SUBMIT: ("submitted_at", "submitted_by_ref"),
    RecordAction.REVIEW: ("review_started_at", "review_started_by_ref"),
    RecordAction.APPROVE: ("approved_at", "approved_by_ref"),
    RecordAction.REJECT: ("rejected_at", "rejected_by_ref"),
    RecordAction.REQUEST_INFO: ("info_requested_at", "info_requested_by_ref"),
    RecordAction.START: ("started_at", None),
    RecordAction.COMPLETE: ("completed_at", "completed_by_ref"),
    RecordAction.CANCEL: ("cancelled_at", "cancelled_by_ref"),
    RecordAction.REQUIRE_TEST: ("test_required_at", None),
    RecordAction.SCHEDULE_TEST: ("test_scheduled_at", None),
    RecordAction.RECORD_TEST_PASS: ("test_graded_at", "test_graded_by_ref"),
    RecordAction.RECORD_TEST_FAIL: ("test_graded_at", "test_graded_by_ref"),
    RecordAction.REVOKE: ("revoked_at", "revoked_by_ref"),
    RecordAction.ISSUE: ("issued_at", None),
    RecordAction.MARK_PAID: ("paid_at", None),
    RecordAction.VOID: ("voided_at", "voided_by_ref"),
    RecordAction.GENERATE_CERTIFICATE: ("certificate_generated_at", None),
}

# Inspection review decisions are recorded as a review, not an approval
STAMP_OVERRIDES: Dict[Tuple[EntityType, RecordAction], Tuple[str, Optional[str]]] = {
    (EntityType.INSPECTION, RecordAction.APPROVE): ("reviewed_at", "reviewed_by_ref"),
    (EntityType.INSPECTION, RecordAction.REJECT): ("reviewed_at", "reviewed_by_ref"),
}


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def assignee_of(entity_type: EntityType, record: Dict[str, Any]) -> Optional[str]:
    field = ASSIGNEE_FIELDS.get(entity_type)
    if not field:
        return None
    return ref_id(record.get(field))


async def load_record(entity_type: EntityType, record_id: str) -> Dict[str, Any]:
    """Fetch a record by public id or raise RecordNotFoundError."""
    db = database.get_db()
    collection = ENTITY_COLLECTIONS[entity_type]
    record = await getattr(db, collection).find_one({id_field_for(collection): record_id}, {"_id": 0})
    if not record:
        raise RecordNotFoundError(ENTITY_LABELS[entity_type], record_id)
    return record


async def apply_action(
    ctx: RequestContext,
    entity_type: EntityType,
    record_id: str,
    action: RecordAction,
    fields: Optional[Dict[str, Any]] = None,
    reason: Optional[str] = None,
    record: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Apply a role-gated action to a record and return the record as written.

    Raises RecordNotFoundError or TransitionNotAllowedError. Payload fields are
    written in the same $set as the status; callers validate them beforehand.
    A record already loaded by the caller may be passed to skip the re-read.
    """
    db = database.get_db()
    collection = ENTITY_COLLECTIONS[entity_type]
    id_field = id_field_for(collection)

    if record is None:
        record = await load_record(entity_type, record_id)

    current_status = record.get("status")
    rule = check_transition(
        entity_type,
        current_status,
        action,
        ctx.role,
        actor_id=ctx.user_id,
        assignee_id=assignee_of(entity_type, record),
    )

    now = datetime.now(timezone.utc)
    actor_ref = to_dbref("users", ctx.user_id)

    update_fields: Dict[str, Any] = {}
    if rule.target_status:
        update_fields["status"] = rule.target_status

    at_field, by_field = STAMP_OVERRIDES.get((entity_type, action)) or ACTION_STAMPS.get(action, (None, None))
    if at_field:
        update_fields[at_field] = now
    if by_field:
        update_fields[by_field] = actor_ref
    if reason:
        update_fields[f"{_snake(action.value)}_reason"] = reason

    update_fields.update(fields or {})
    update_fields["last_updated_at"] = now
    update_fields["last_updated_by_ref"] = actor_ref

    await getattr(db, collection).update_one(
        {id_field: record_id},
        {"$set": update_fields}
    )

    new_status = update_fields.get("status", current_status)
    await create_audit_log(
        action=AuditAction.RECORD_TRANSITION,
        actor_role=ctx.role,
        actor_id=ctx.user_id,
        resource_type=entity_type.value,
        resource_id=record_id,
        before_state={"status": current_status},
        after_state={"status": new_status},
        metadata={"record_action": action.value, "reason": reason},
    )

    logger.info(f"{ENTITY_LABELS[entity_type]} {record_id}: {action.value} by {ctx.email} ({current_status} -> {new_status})")

    updated = dict(record)
    updated.update(update_fields)
    return updated
