"""
Operator license service.

An application is created together with its Operator record, submitted, and
reviewed. Review can route through a competency test (AwaitingTest ->
TestScheduled -> TestPassed/TestFailed) before approval. Approval assigns the
license number, issue date and expiry; revocation requires a reason.
"""
import os
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from database import database
from middleware import RequestContext
from models import (
    ApproveLicenseRequest,
    AuditAction,
    CompetencyTestResult,
    EntityType,
    LicenseApplicationCreate,
    LicenseApplicationUpdate,
    LicenseStatus,
    RecordTestResultRequest,
    ScheduleTestRequest,
    to_document,
)
from services.projections import resolve_operator, resolve_user, to_public
from services.record_workflow import RecordAction, allowed_actions
from services.transitions import apply_action, load_record
from utils.audit import create_audit_log
from utils.errors import RecordNotFoundError, RecordValidationError
from utils.references import ref_id, to_dbref
from utils.timestamps import add_years, normalize_timestamp

logger = logging.getLogger(__name__)

LICENSE_VALIDITY_YEARS = int(os.getenv("LICENSE_VALIDITY_YEARS", "3"))


def generate_license_number() -> str:
    """Six-digit license number."""
    return f"{secrets.randbelow(900000) + 100000}"


def present_license(ctx: RequestContext, doc: Dict[str, Any]) -> Dict[str, Any]:
    public = to_public(doc)
    public["allowed_actions"] = [
        a.value for a in allowed_actions(EntityType.OPERATOR_LICENSE, doc.get("status"), ctx.role, ctx.user_id)
    ]
    return public


async def create_application(ctx: RequestContext, data: LicenseApplicationCreate) -> Dict[str, Any]:
    """Create the Operator and a Draft application referencing it."""
    db = database.get_db()
    now = datetime.now(timezone.utc)
    actor_ref = to_dbref("users", ctx.user_id)

    operator = to_document(data.operator)
    operator.update({
        "operator_id": str(uuid.uuid4()),
        "created_at": now,
        "updated_at": now,
        "created_by_ref": actor_ref,
    })
    await db.operators.insert_one(operator)
    operator.pop("_id", None)

    application = {
        "license_application_id": str(uuid.uuid4()),
        "operator_ref": to_dbref("operators", operator["operator_id"]),
        "operator_data": {
            "id": operator["operator_id"],
            "name": f"{operator.get('first_name', '')} {operator.get('surname', '')}".strip(),
        },
        "application_type": data.application_type,
        "previous_license_number": data.previous_license_number,
        "status": LicenseStatus.DRAFT.value,
        "assigned_license_number": None,
        "attached_documents": [],
        "competency_test_ref": None,
        "notes": data.notes,
        "created_at": now,
        "created_by_ref": actor_ref,
        "last_updated_at": now,
        "last_updated_by_ref": actor_ref,
    }
    await db.operatorLicenseApplications.insert_one(application)
    application.pop("_id", None)

    await create_audit_log(
        action=AuditAction.RECORD_CREATED,
        actor_role=ctx.role,
        actor_id=ctx.user_id,
        resource_type=EntityType.OPERATOR_LICENSE.value,
        resource_id=application["license_application_id"],
        metadata={"operator_id": operator["operator_id"], "application_type": data.application_type},
    )
    logger.info(f"License application created: {application['license_application_id']}")
    return application


async def update_application(
    ctx: RequestContext,
    application_id: str,
    data: LicenseApplicationUpdate,
) -> Dict[str, Any]:
    fields = to_document(data, exclude_unset=True)
    return await apply_action(ctx, EntityType.OPERATOR_LICENSE, application_id, RecordAction.EDIT, fields=fields)


async def list_applications(
    status: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
) -> List[Dict[str, Any]]:
    db = database.get_db()
    query: Dict[str, Any] = {"status": status} if status else {}
    cursor = db.operatorLicenseApplications.find(query, {"_id": 0}).sort("last_updated_at", -1).skip(skip).limit(limit)
    return await cursor.to_list(length=limit)


async def get_application_detail(ctx: RequestContext, application_id: str) -> Dict[str, Any]:
    db = database.get_db()
    application = await load_record(EntityType.OPERATOR_LICENSE, application_id)

    result = present_license(ctx, application)
    result["operator"] = await resolve_operator(db, application.get("operator_ref"))
    result["approved_by"] = await resolve_user(db, application.get("approved_by_ref"))

    test_id = ref_id(application.get("competency_test_ref"))
    result["competency_test"] = None
    if test_id:
        test = await db.competencyTests.find_one({"test_id": test_id}, {"_id": 0})
        result["competency_test"] = to_public(test) if test else {"id": test_id}
    return result


async def submit_application(ctx: RequestContext, application_id: str) -> Dict[str, Any]:
    return await apply_action(ctx, EntityType.OPERATOR_LICENSE, application_id, RecordAction.SUBMIT)


async def start_review(ctx: RequestContext, application_id: str) -> Dict[str, Any]:
    return await apply_action(ctx, EntityType.OPERATOR_LICENSE, application_id, RecordAction.REVIEW)


async def request_info(ctx: RequestContext, application_id: str, reason: str) -> Dict[str, Any]:
    return await apply_action(
        ctx, EntityType.OPERATOR_LICENSE, application_id, RecordAction.REQUEST_INFO, reason=reason
    )


async def require_test(ctx: RequestContext, application_id: str) -> Dict[str, Any]:
    return await apply_action(ctx, EntityType.OPERATOR_LICENSE, application_id, RecordAction.REQUIRE_TEST)


async def schedule_test(ctx: RequestContext, application_id: str, request: ScheduleTestRequest) -> Dict[str, Any]:
    """Create a competencyTests record pending grading and link it to the application."""
    db = database.get_db()
    application = await load_record(EntityType.OPERATOR_LICENSE, application_id)

    examiner_id = request.examiner_id or ctx.user_id
    test = {
        "test_id": str(uuid.uuid4()),
        "license_application_ref": to_dbref("operatorLicenseApplications", application_id),
        "operator_ref": application.get("operator_ref"),
        "test_date": request.test_date,
        "examiner_ref": to_dbref("users", examiner_id),
        "score_achieved": None,
        "percentage_achieved": None,
        "result": CompetencyTestResult.PENDING_GRADING.value,
        "notes": request.notes,
        "created_at": datetime.now(timezone.utc),
    }

    # Test record is written only once the guard has passed
    updated = await apply_action(
        ctx, EntityType.OPERATOR_LICENSE, application_id, RecordAction.SCHEDULE_TEST,
        fields={"competency_test_ref": to_dbref("competencyTests", test["test_id"])},
        record=application,
    )
    await db.competencyTests.insert_one(test)
    logger.info(f"Competency test {test['test_id']} scheduled for application {application_id}")
    return updated


async def record_test_result(
    ctx: RequestContext,
    application_id: str,
    passed: bool,
    request: RecordTestResultRequest,
) -> Dict[str, Any]:
    """Grade the linked competency test and move the application to TestPassed/TestFailed."""
    db = database.get_db()
    application = await load_record(EntityType.OPERATOR_LICENSE, application_id)
    test_id = ref_id(application.get("competency_test_ref"))
    if not test_id:
        raise RecordValidationError("No competency test is linked to this application", field="competency_test_ref")

    action = RecordAction.RECORD_TEST_PASS if passed else RecordAction.RECORD_TEST_FAIL
    updated = await apply_action(ctx, EntityType.OPERATOR_LICENSE, application_id, action, record=application)

    result = await db.competencyTests.update_one(
        {"test_id": test_id},
        {"$set": {
            "result": (CompetencyTestResult.PASS if passed else CompetencyTestResult.FAIL).value,
            "score_achieved": request.score_achieved,
            "percentage_achieved": request.percentage_achieved,
            "notes": request.notes,
            "graded_at": datetime.now(timezone.utc),
            "examiner_ref": to_dbref("users", ctx.user_id),
        }}
    )
    if result.matched_count == 0:
        logger.warning(f"Competency test {test_id} missing while grading application {application_id}")
    return updated


async def approve_application(
    ctx: RequestContext,
    application_id: str,
    request: ApproveLicenseRequest,
) -> Dict[str, Any]:
    """
    Approve and issue the license.
    The license number is generated when none is supplied; issue date defaults
    to now and expiry to issue date plus LICENSE_VALIDITY_YEARS.
    """
    application = await load_record(EntityType.OPERATOR_LICENSE, application_id)

    issued_at = normalize_timestamp(request.issued_at) or datetime.now(timezone.utc)
    expiry = normalize_timestamp(request.expiry_date) or add_years(issued_at, LICENSE_VALIDITY_YEARS)
    if expiry <= issued_at:
        raise RecordValidationError("Expiry date must be after the issue date", field="expiry_date")

    fields: Dict[str, Any] = {
        "assigned_license_number": (request.assigned_license_number or "").strip() or generate_license_number(),
        "issued_at": issued_at,
        "expiry_date": expiry,
    }
    if request.notes:
        fields["approval_notes"] = request.notes

    return await apply_action(
        ctx, EntityType.OPERATOR_LICENSE, application_id, RecordAction.APPROVE,
        fields=fields, record=application,
    )


async def reject_application(ctx: RequestContext, application_id: str, reason: str) -> Dict[str, Any]:
    return await apply_action(ctx, EntityType.OPERATOR_LICENSE, application_id, RecordAction.REJECT, reason=reason)


async def revoke_license(ctx: RequestContext, application_id: str, reason: str) -> Dict[str, Any]:
    if not reason or not reason.strip():
        raise RecordValidationError("A reason is required to revoke a license", field="reason")
    return await apply_action(
        ctx, EntityType.OPERATOR_LICENSE, application_id, RecordAction.REVOKE, reason=reason.strip()
    )


async def get_operator(operator_id: str) -> Dict[str, Any]:
    db = database.get_db()
    operator = await db.operators.find_one({"operator_id": operator_id}, {"_id": 0})
    if not operator:
        raise RecordNotFoundError("Operator", operator_id)
    return operator
