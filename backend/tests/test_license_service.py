"""
Operator license applications through review, competency test and approval.
"""
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

from pydantic import ValidationError

from conftest import make_ctx
from models import (
    ApproveLicenseRequest,
    LicenseApplicationCreate,
    LicenseApplicationUpdate,
    RecordTestResultRequest,
    ScheduleTestRequest,
    UserRole,
)
from services import license_service
from utils.errors import RecordNotFoundError, RecordValidationError, TransitionNotAllowedError

TEST_DATE = datetime(2025, 7, 1, 10, 0, tzinfo=timezone.utc)


def _application(**overrides):
    data = {"operator": {"surname": "Tau", "first_name": "Ben", "phone_mobile": "7000 1234"}}
    data.update(overrides)
    return LicenseApplicationCreate(**data)


async def _in_review(ctx):
    app = await license_service.create_application(ctx, _application())
    app_id = app["license_application_id"]
    await license_service.submit_application(ctx, app_id)
    await license_service.start_review(ctx, app_id)
    return app_id


def test_renewal_needs_previous_number():
    with pytest.raises(ValidationError):
        _application(application_type="Renewal")
    with pytest.raises(ValidationError):
        _application(application_type="Transfer")
    assert _application(application_type="Renewal", previous_license_number="123456").application_type == "Renewal"


@pytest.mark.asyncio
async def test_create_writes_operator_and_draft(fake_db):
    app = await license_service.create_application(make_ctx(UserRole.REGISTRAR), _application())

    operator = fake_db.operators.docs[0]
    assert operator["surname"] == "Tau"
    assert app["status"] == "Draft"
    assert app["operator_ref"].id == operator["operator_id"]
    assert app["operator_data"] == {"id": operator["operator_id"], "name": "Ben Tau"}
    assert (await license_service.get_operator(operator["operator_id"]))["phone_mobile"] == "7000 1234"
    with pytest.raises(RecordNotFoundError):
        await license_service.get_operator("nobody")


@pytest.mark.asyncio
async def test_competency_test_loop_then_approval(fake_db):
    manager = make_ctx(UserRole.SUPERVISOR)
    examiner = make_ctx(UserRole.INSPECTOR, user_id="insp-a")
    app_id = await _in_review(manager)

    await license_service.require_test(manager, app_id)
    with pytest.raises(TransitionNotAllowedError):
        await license_service.schedule_test(examiner, app_id, ScheduleTestRequest(test_date=TEST_DATE))
    assert fake_db.competencyTests.docs == []

    scheduled = await license_service.schedule_test(
        manager, app_id, ScheduleTestRequest(test_date=TEST_DATE, examiner_id="insp-a")
    )
    assert scheduled["status"] == "TestScheduled"
    test = fake_db.competencyTests.docs[0]
    assert test["result"] == "PendingGrading"
    assert test["examiner_ref"].id == "insp-a"
    assert scheduled["competency_test_ref"].id == test["test_id"]

    failed = await license_service.record_test_result(
        examiner, app_id, passed=False, request=RecordTestResultRequest(percentage_achieved=40)
    )
    assert failed["status"] == "TestFailed"
    assert fake_db.competencyTests.docs[0]["result"] == "Fail"

    await license_service.schedule_test(manager, app_id, ScheduleTestRequest(test_date=TEST_DATE))
    passed = await license_service.record_test_result(
        examiner, app_id, passed=True, request=RecordTestResultRequest(percentage_achieved=85)
    )
    assert passed["status"] == "TestPassed"
    assert len(fake_db.competencyTests.docs) == 2
    assert fake_db.competencyTests.docs[1]["result"] == "Pass"

    issued_at = datetime(2025, 7, 2, tzinfo=timezone.utc)
    approved = await license_service.approve_application(
        manager, app_id, ApproveLicenseRequest(issued_at=issued_at)
    )
    assert approved["status"] == "Approved"
    assert len(approved["assigned_license_number"]) == 6
    assert approved["expiry_date"] == datetime(2025 + license_service.LICENSE_VALIDITY_YEARS, 7, 2, tzinfo=timezone.utc)

    detail = await license_service.get_application_detail(manager, app_id)
    assert detail["operator"]["name"] == "Ben Tau"
    assert detail["competency_test"]["result"] == "Pass"
    assert detail["allowed_actions"] == ["Edit", "Revoke"]


@pytest.mark.asyncio
async def test_grading_without_linked_test_is_rejected(fake_db):
    manager = make_ctx(UserRole.REGISTRAR)
    app_id = await _in_review(manager)
    fake_db.operatorLicenseApplications.docs[0]["status"] = "TestScheduled"

    with pytest.raises(RecordValidationError):
        await license_service.record_test_result(manager, app_id, passed=True, request=RecordTestResultRequest())


@pytest.mark.asyncio
async def test_explicit_number_and_bad_expiry(fake_db):
    manager = make_ctx(UserRole.REGISTRAR)
    app_id = await _in_review(manager)

    with pytest.raises(RecordValidationError):
        await license_service.approve_application(manager, app_id, ApproveLicenseRequest(
            issued_at=datetime(2025, 7, 2, tzinfo=timezone.utc),
            expiry_date=datetime(2025, 7, 1, tzinfo=timezone.utc),
        ))

    approved = await license_service.approve_application(
        manager, app_id, ApproveLicenseRequest(assigned_license_number=" 654321 ")
    )
    assert approved["assigned_license_number"] == "654321"


@pytest.mark.asyncio
async def test_revoke_requires_reason_and_approved_license(fake_db):
    manager = make_ctx(UserRole.REGISTRAR)
    app_id = await _in_review(manager)

    with pytest.raises(TransitionNotAllowedError):
        await license_service.revoke_license(manager, app_id, "Fraud")

    await license_service.approve_application(manager, app_id, ApproveLicenseRequest())
    with pytest.raises(RecordValidationError):
        await license_service.revoke_license(manager, app_id, "   ")

    revoked = await license_service.revoke_license(manager, app_id, " Fraudulent documents ")
    assert revoked["status"] == "Revoked"
    assert fake_db.operatorLicenseApplications.docs[0]["revoke_reason"] == "Fraudulent documents"


@pytest.mark.asyncio
async def test_request_info_and_office_fields(fake_db):
    manager = make_ctx(UserRole.REGISTRAR)
    app_id = await _in_review(manager)

    await license_service.request_info(manager, app_id, "Need proof of identity")
    updated = await license_service.update_application(
        manager, app_id, LicenseApplicationUpdate(receipt_no="R-55", method_of_payment="Cash")
    )
    assert updated["status"] == "RequiresInfo"
    stored = fake_db.operatorLicenseApplications.docs[0]
    assert stored["receipt_no"] == "R-55"
    assert stored["method_of_payment"] == "Cash"
    assert "payment_amount" not in stored

    listed = await license_service.list_applications(status="RequiresInfo")
    assert [a["license_application_id"] for a in listed] == [app_id]


@pytest.mark.asyncio
async def test_grading_a_missing_competency_test_still_moves_the_application(fake_db, caplog):
    manager = make_ctx(UserRole.ADMIN)
    app_id = await _in_review(manager)
    application = fake_db.operatorLicenseApplications.docs[0]
    application["status"] = "TestScheduled"
    application["competency_test_ref"] = "competencyTests/gone"

    with caplog.at_level("WARNING", logger="services.license_service"):
        updated = await license_service.record_test_result(
            manager, app_id, passed=False, request=RecordTestResultRequest(percentage_achieved=40)
        )

    assert updated["status"] == "TestFailed"
    assert fake_db.competencyTests.docs == []
    assert "Competency test gone missing" in caplog.text
