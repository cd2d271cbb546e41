from fastapi import Request, HTTPException, status
from dataclasses import dataclass
from typing import Optional, Iterable
import logging
from auth import decode_access_token
from models import UserRole
from database import database

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """Authenticated principal for one request, passed explicitly into services."""
    user_id: str
    email: str
    role: UserRole
    display_name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.display_name or self.email

    def has_role(self, *roles: UserRole) -> bool:
        return self.role in roles


async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate JWT claims from the Authorization header."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    return decode_access_token(token)


async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user


async def get_request_context(request: Request) -> RequestContext:
    """Build the request context from the token and the stored user record.

    The user record is authoritative for role and active flag, so a role change
    or deactivation takes effect without waiting for token expiry.
    """
    claims = await require_auth(request)

    db = database.get_db()
    user = await db.users.find_one(
        {"user_id": claims.get("user_id")},
        {"_id": 0, "password_hash": 0}
    )

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )

    if not user.get("is_active", True):
        logger.info(f"Inactive user rejected: {user.get('email')}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is not active"
        )

    try:
        role = UserRole(user.get("role", UserRole.READ_ONLY.value))
    except ValueError:
        logger.warning(f"Unknown role {user.get('role')!r} for user {user.get('user_id')}; treating as ReadOnly")
        role = UserRole.READ_ONLY

    ctx = RequestContext(
        user_id=user["user_id"],
        email=user.get("email", ""),
        role=role,
        display_name=user.get("display_name"),
    )
    request.state.context = ctx
    return ctx


def require_roles(roles: Iterable[UserRole]):
    """Dependency factory: context whose role is one of roles, else 403."""
    allowed = frozenset(roles)

    async def guard(request: Request) -> RequestContext:
        ctx = await get_request_context(request)
        if ctx.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )
        return ctx

    return guard


admin_route_guard = require_roles([UserRole.ADMIN])
registry_route_guard = require_roles([UserRole.ADMIN, UserRole.REGISTRAR])
