from fastapi import APIRouter, Depends
from typing import Optional
from middleware import RequestContext, get_request_context, require_roles
from models import InfringementCreate, PaymentDetails, ReasonRequest, UserRole
from services import infringement_service
from services.infringement_service import catalogue_items, present_infringement
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/infringements", tags=["infringements"])

infringement_create_guard = require_roles([
    UserRole.ADMIN, UserRole.REGISTRAR, UserRole.SUPERVISOR, UserRole.INSPECTOR,
])


@router.get("/catalogue")
async def get_catalogue(ctx: RequestContext = Depends(get_request_context)):
    """Infringement items that may be cited, with their point values."""
    return {"items": catalogue_items()}


@router.get("")
async def list_infringements(
    status: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
    ctx: RequestContext = Depends(get_request_context),
):
    infringements = await infringement_service.list_infringements(ctx, status=status, limit=limit, skip=skip)
    return {"infringements": infringements, "total": len(infringements)}


@router.post("", status_code=201)
async def create_infringement(data: InfringementCreate, ctx: RequestContext = Depends(infringement_create_guard)):
    doc = await infringement_service.create_infringement(ctx, data)
    return present_infringement(ctx, doc)


@router.get("/{infringement_id}")
async def get_infringement(infringement_id: str, ctx: RequestContext = Depends(get_request_context)):
    return await infringement_service.get_infringement_detail(ctx, infringement_id)


@router.put("/{infringement_id}")
async def update_infringement(
    infringement_id: str,
    data: InfringementCreate,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await infringement_service.update_infringement(ctx, infringement_id, data)
    return present_infringement(ctx, doc)


@router.post("/{infringement_id}/issue")
async def issue_infringement(infringement_id: str, ctx: RequestContext = Depends(get_request_context)):
    doc = await infringement_service.issue_infringement(ctx, infringement_id)
    return present_infringement(ctx, doc)


@router.post("/{infringement_id}/review")
async def start_review(infringement_id: str, ctx: RequestContext = Depends(get_request_context)):
    doc = await infringement_service.start_review(ctx, infringement_id)
    return present_infringement(ctx, doc)


@router.post("/{infringement_id}/approve")
async def approve_infringement(infringement_id: str, ctx: RequestContext = Depends(get_request_context)):
    doc = await infringement_service.approve_infringement(ctx, infringement_id)
    return present_infringement(ctx, doc)


@router.post("/{infringement_id}/pay")
async def mark_paid(
    infringement_id: str,
    payment: PaymentDetails,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await infringement_service.mark_paid(ctx, infringement_id, payment)
    return present_infringement(ctx, doc)


@router.post("/{infringement_id}/void")
async def void_infringement(
    infringement_id: str,
    body: ReasonRequest,
    ctx: RequestContext = Depends(get_request_context),
):
    doc = await infringement_service.void_infringement(ctx, infringement_id, body.reason)
    return present_infringement(ctx, doc)
