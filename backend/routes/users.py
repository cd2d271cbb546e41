from fastapi import APIRouter, Depends
from typing import Optional
from middleware import RequestContext, admin_route_guard
from models import UserActiveUpdate, UserCreate
from services import user_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("")
async def list_users(
    role: Optional[str] = None,
    include_inactive: bool = True,
    ctx: RequestContext = Depends(admin_route_guard),
):
    users = await user_service.list_users(role=role, include_inactive=include_inactive)
    return {"users": users, "total": len(users)}


@router.post("", status_code=201)
async def create_user(data: UserCreate, ctx: RequestContext = Depends(admin_route_guard)):
    """Create a staff user (Admin only)."""
    return await user_service.create_user(ctx, data)


@router.get("/{user_id}")
async def get_user(user_id: str, ctx: RequestContext = Depends(admin_route_guard)):
    return await user_service.get_user(user_id)


@router.patch("/{user_id}/active")
async def set_user_active(
    user_id: str,
    data: UserActiveUpdate,
    ctx: RequestContext = Depends(admin_route_guard),
):
    """Activate or deactivate a user; takes effect on the user's next request."""
    return await user_service.set_user_active(ctx, user_id, data.is_active)
