from fastapi import APIRouter, Depends, File, UploadFile
from typing import Optional
from middleware import RequestContext, get_request_context, registry_route_guard
from models import ApproveRegistrationRequest, ReasonRequest, RegistrationFields
from services import registration_service
from services.registration_service import IMPORT_CSV_HEADERS, present_registration
from utils.errors import RecordValidationError
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/registrations", tags=["registrations"])


@router.get("")
async def list_registrations(
    status: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
    ctx: RequestContext = Depends(get_request_context),
):
    docs = await registration_service.list_registrations(status=status, search=search, limit=limit, skip=skip)
    return {"registrations": [present_registration(ctx, d) for d in docs], "total": len(docs)}


@router.post("", status_code=201)
async def create_registration(data: RegistrationFields, ctx: RequestContext = Depends(registry_route_guard)):
    doc = await registration_service.create_registration(ctx, data)
    return present_registration(ctx, doc)


@router.get("/import/template")
async def get_import_template(ctx: RequestContext = Depends(registry_route_guard)):
    """Column headers expected by the bulk import."""
    return {"headers": IMPORT_CSV_HEADERS}


@router.post("/import")
async def import_registrations(
    file: UploadFile = File(...),
    ctx: RequestContext = Depends(registry_route_guard),
):
    """Bulk-create Draft registrations from a CSV upload (Admin and Registrar)."""
    raw = await file.read()
    try:
        content = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise RecordValidationError("CSV file must be UTF-8 encoded", field="file")
    logger.info(f"Registration import uploaded by {ctx.email}: {file.filename} ({len(raw)} bytes)")
    return await registration_service.import_registrations_csv(ctx, content)


@router.get("/{registration_id}")
async def get_registration(registration_id: str, ctx: RequestContext = Depends(get_request_context)):
    return await registration_service.get_registration_detail(ctx, registration_id)


@router.put("/{registration_id}")
async def update_registration(
    registration_id: str,
    data: RegistrationFields,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await registration_service.update_registration(ctx, registration_id, data)
    return present_registration(ctx, doc)


@router.post("/{registration_id}/submit")
async def submit_registration(registration_id: str, ctx: RequestContext = Depends(get_request_context)):
    doc = await registration_service.submit_registration(ctx, registration_id)
    return present_registration(ctx, doc)


@router.post("/{registration_id}/review")
async def start_review(registration_id: str, ctx: RequestContext = Depends(get_request_context)):
    doc = await registration_service.start_review(ctx, registration_id)
    return present_registration(ctx, doc)


@router.post("/{registration_id}/request-info")
async def request_info(
    registration_id: str,
    body: ReasonRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await registration_service.request_info(ctx, registration_id, body.reason)
    return present_registration(ctx, doc)


@router.post("/{registration_id}/approve")
async def approve_registration(
    registration_id: str,
    body: ApproveRegistrationRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await registration_service.approve_registration(ctx, registration_id, body)
    return present_registration(ctx, doc)


@router.post("/{registration_id}/reject")
async def reject_registration(
    registration_id: str,
    body: ReasonRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await registration_service.reject_registration(ctx, registration_id, body.reason)
    return present_registration(ctx, doc)


@router.post("/{registration_id}/certificate")
async def generate_certificate(registration_id: str, ctx: RequestContext = Depends(get_request_context)):
    return await registration_service.generate_certificate(ctx, registration_id)
