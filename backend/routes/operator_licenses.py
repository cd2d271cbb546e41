from fastapi import APIRouter, Depends
from typing import Optional
from middleware import RequestContext, get_request_context, require_roles
from models import (
    ApproveLicenseRequest,
    LicenseApplicationCreate,
    LicenseApplicationUpdate,
    ReasonRequest,
    RecordTestResultRequest,
    ScheduleTestRequest,
    UserRole,
)
from services import license_service
from services.license_service import present_license
from services.projections import to_public
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/operator-licenses", tags=["operator-licenses"])

license_create_guard = require_roles([UserRole.ADMIN, UserRole.REGISTRAR, UserRole.SUPERVISOR])


@router.get("")
async def list_applications(
    status: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
    ctx: RequestContext = Depends(get_request_context),
):
    docs = await license_service.list_applications(status=status, limit=limit, skip=skip)
    return {"applications": [present_license(ctx, d) for d in docs], "total": len(docs)}


@router.post("", status_code=201)
async def create_application(data: LicenseApplicationCreate, ctx: RequestContext = Depends(license_create_guard)):
    """Create the operator record and a Draft license application."""
    doc = await license_service.create_application(ctx, data)
    return present_license(ctx, doc)


@router.get("/operators/{operator_id}")
async def get_operator(operator_id: str, ctx: RequestContext = Depends(get_request_context)):
    return to_public(await license_service.get_operator(operator_id))


@router.get("/{application_id}")
async def get_application(application_id: str, ctx: RequestContext = Depends(get_request_context)):
    return await license_service.get_application_detail(ctx, application_id)


@router.patch("/{application_id}")
async def update_application(
    application_id: str,
    data: LicenseApplicationUpdate,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await license_service.update_application(ctx, application_id, data)
    return present_license(ctx, doc)


@router.post("/{application_id}/submit")
async def submit_application(application_id: str, ctx: RequestContext = Depends(get_request_context)):
    doc = await license_service.submit_application(ctx, application_id)
    return present_license(ctx, doc)


@router.post("/{application_id}/review")
async def start_review(application_id: str, ctx: RequestContext = Depends(get_request_context)):
    doc = await license_service.start_review(ctx, application_id)
    return present_license(ctx, doc)


@router.post("/{application_id}/request-info")
async def request_info(
    application_id: str,
    body: ReasonRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await license_service.request_info(ctx, application_id, body.reason)
    return present_license(ctx, doc)


@router.post("/{application_id}/require-test")
async def require_test(application_id: str, ctx: RequestContext = Depends(get_request_context)):
    doc = await license_service.require_test(ctx, application_id)
    return present_license(ctx, doc)


@router.post("/{application_id}/test")
async def schedule_test(
    application_id: str,
    body: ScheduleTestRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await license_service.schedule_test(ctx, application_id, body)
    return present_license(ctx, doc)


@router.post("/{application_id}/test/pass")
async def record_test_pass(
    application_id: str,
    body: RecordTestResultRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await license_service.record_test_result(ctx, application_id, True, body)
    return present_license(ctx, doc)


@router.post("/{application_id}/test/fail")
async def record_test_fail(
    application_id: str,
    body: RecordTestResultRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await license_service.record_test_result(ctx, application_id, False, body)
    return present_license(ctx, doc)


@router.post("/{application_id}/approve")
async def approve_application(
    application_id: str,
    body: ApproveLicenseRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await license_service.approve_application(ctx, application_id, body)
    return present_license(ctx, doc)


@router.post("/{application_id}/reject")
async def reject_application(
    application_id: str,
    body: ReasonRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await license_service.reject_application(ctx, application_id, body.reason)
    return present_license(ctx, doc)


@router.post("/{application_id}/revoke")
async def revoke_license(
    application_id: str,
    body: ReasonRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await license_service.revoke_license(ctx, application_id, body.reason)
    return present_license(ctx, doc)
