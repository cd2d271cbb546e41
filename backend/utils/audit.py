from database import database
from models import AuditLog, AuditAction, UserRole
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)


def diff_states(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Field-level difference between two snapshots of a record.

    Keys present only in after are "added", only in before "removed", and in
    both with different values "changed" as {"from", "to"}. Empty groups are
    left out.
    """
    if not before and not after:
        return {}
    before = before or {}
    after = after or {}

    diff: Dict[str, Dict[str, Any]] = {"added": {}, "removed": {}, "changed": {}}
    for key in set(before) | set(after):
        if key not in before:
            diff["added"][key] = after[key]
        elif key not in after:
            diff["removed"][key] = before[key]
        elif before[key] != after[key]:
            diff["changed"][key] = {"from": before[key], "to": after[key]}

    return {k: v for k, v in diff.items() if v}


async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[UserRole] = None,
    actor_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Append an entry to audit_logs and return its audit_id.

    resource_type is the record family ("registration", "inspection",
    "operator_license", "infringement", "user") or "system"/"report" for
    entries that are not about one record. When both snapshots are given the
    field diff is stored under metadata["diff"].

    Audit writes never fail the operation being audited: errors are logged
    and "" is returned.
    """
    try:
        db = database.get_db()

        enriched = dict(metadata or {})
        if before_state and after_state:
            diff = diff_states(before_state, after_state)
            if diff:
                enriched["diff"] = diff

        audit_log = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched or None,
        )

        await db.audit_logs.insert_one(audit_log.model_dump(mode="json"))
        logger.info(f"Audit log created: {action.value} {resource_type or ''} {resource_id or ''}".rstrip())
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        return ""


async def get_record_history(
    record_type: str,
    record_id: str,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """Audit entries for one record, newest first. Read errors give []."""
    try:
        db = database.get_db()
        cursor = db.audit_logs.find(
            {"resource_type": record_type, "resource_id": record_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to read history for {record_type} {record_id}: {e}")
        return []
