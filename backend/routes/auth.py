from fastapi import APIRouter, Depends, HTTPException, status
from middleware import RequestContext, get_request_context
from models import AuditAction, LoginRequest, UserRole
from auth import create_access_token
from services.user_service import authenticate, record_login
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/login")
async def login(credentials: LoginRequest):
    """Staff login. Returns a bearer token and the user's role."""
    user = await authenticate(credentials.email, credentials.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials"
        )

    if not user.get("is_active", True):
        await create_audit_log(
            action=AuditAction.USER_LOGIN_FAILED,
            actor_id=user["user_id"],
            metadata={"email": user.get("email"), "reason": "inactive"}
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is not active"
        )

    await record_login(user)

    token_data = {
        "user_id": user["user_id"],
        "email": user["email"],
        "role": user.get("role", UserRole.READ_ONLY.value),
    }
    access_token = create_access_token(token_data)

    try:
        actor_role = UserRole(user.get("role"))
    except ValueError:
        actor_role = None
    await create_audit_log(
        action=AuditAction.USER_LOGIN,
        actor_role=actor_role,
        actor_id=user["user_id"],
    )
    logger.info(f"User logged in: {user['email']}")

    return {
        "access_token": access_token,
        "token_type": "bearer",
        "user": {
            "user_id": user["user_id"],
            "email": user["email"],
            "display_name": user.get("display_name"),
            "role": user.get("role"),
        },
    }


@router.get("/me")
async def get_me(ctx: RequestContext = Depends(get_request_context)):
    """Current principal as seen by the server (role from the stored user)."""
    return {
        "user_id": ctx.user_id,
        "email": ctx.email,
        "display_name": ctx.display_name,
        "role": ctx.role.value,
    }
