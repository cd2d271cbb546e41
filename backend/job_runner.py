"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and admin (manual run).
Each run_* returns a dict with "message" and "count".
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_ID = "system"


async def _lapsed_ids(collection, id_field: str, query: Dict[str, Any], date_field: str, now: datetime) -> List[str]:
    """Ids of records matching query whose date_field is in the past.

    Dates are compared after normalization so legacy string and map shapes
    are swept too.
    """
    from utils.timestamps import normalize_timestamp

    ids = []
    cursor = collection.find(query, {"_id": 0, id_field: 1, date_field: 1})
    async for doc in cursor:
        when = normalize_timestamp(doc.get(date_field))
        if when is not None and when < now:
            ids.append(doc[id_field])
    return ids


async def _mark(
    collection,
    id_field: str,
    ids: List[str],
    from_statuses: List[str],
    status: str,
    now: datetime,
    stamp: str,
) -> int:
    """Set status on ids still in one of from_statuses.

    The status filter is repeated in the write so a record that moved on after
    _lapsed_ids read it (paid, revoked) is left alone.
    """
    if not ids:
        return 0
    result = await collection.update_many(
        {id_field: {"$in": ids}, "status": {"$in": from_statuses}},
        {"$set": {
            "status": status,
            stamp: now,
            "last_updated_at": now,
            "last_updated_by_ref": None,
        }}
    )
    return result.modified_count


async def run_expiry_sweep():
    """Daily job: Approved registrations and licenses past expiry_date become Expired;
    Issued/Approved infringements past payment_due_date become Overdue.
    """
    try:
        from database import database
        from models import AuditAction, InfringementStatus, LicenseStatus, RegistrationStatus
        from utils.audit import create_audit_log

        db = database.get_db()
        now = datetime.now(timezone.utc)

        registration_from = [RegistrationStatus.APPROVED.value]
        license_from = [LicenseStatus.APPROVED.value]
        infringement_from = [InfringementStatus.ISSUED.value, InfringementStatus.APPROVED.value]

        registration_ids = await _lapsed_ids(
            db.registrations, "registration_id",
            {"status": {"$in": registration_from}, "expiry_date": {"$ne": None}},
            "expiry_date", now,
        )
        license_ids = await _lapsed_ids(
            db.operatorLicenseApplications, "license_application_id",
            {"status": {"$in": license_from}, "expiry_date": {"$ne": None}},
            "expiry_date", now,
        )
        infringement_ids = await _lapsed_ids(
            db.infringements, "infringement_id",
            {"status": {"$in": infringement_from}, "payment_due_date": {"$ne": None}},
            "payment_due_date", now,
        )

        registrations = await _mark(
            db.registrations, "registration_id", registration_ids, registration_from,
            RegistrationStatus.EXPIRED.value, now, "expired_at",
        )
        licenses = await _mark(
            db.operatorLicenseApplications, "license_application_id", license_ids, license_from,
            LicenseStatus.EXPIRED.value, now, "expired_at",
        )
        infringements = await _mark(
            db.infringements, "infringement_id", infringement_ids, infringement_from,
            InfringementStatus.OVERDUE.value, now, "overdue_at",
        )

        count = registrations + licenses + infringements
        if count:
            await create_audit_log(
                action=AuditAction.EXPIRY_SWEEP,
                actor_id=SYSTEM_ACTOR_ID,
                resource_type="system",
                metadata={
                    "registration_ids": registration_ids,
                    "license_application_ids": license_ids,
                    "infringement_ids": infringement_ids,
                },
            )

        logger.info(
            f"Expiry sweep completed: {registrations} registrations expired, "
            f"{licenses} licenses expired, {infringements} infringements overdue"
        )
        return {
            "message": f"Expiry sweep: {count} records updated",
            "count": count,
            "registrations": registrations,
            "licenses": licenses,
            "infringements": infringements,
        }
    except Exception as e:
        logger.error(f"Expiry sweep job failed: {e}")
        raise


# Map scheduler job id -> run function (for admin manual run)
JOB_RUNNERS = {
    "expiry_sweep": run_expiry_sweep,
}
