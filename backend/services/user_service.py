"""
User administration: staff accounts, roles and the active flag.

Role and active flag are read from the stored user on every request (see
middleware.get_request_context), so changes here apply immediately.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from auth import hash_password, validate_password_strength, verify_password
from database import database
from middleware import RequestContext
from models import AuditAction, User, UserCreate, to_document
from utils.audit import create_audit_log
from utils.errors import RecordNotFoundError, RecordValidationError

logger = logging.getLogger(__name__)

PUBLIC_USER_PROJECTION = {"_id": 0, "password_hash": 0}


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


async def create_user(ctx: RequestContext, data: UserCreate) -> Dict[str, Any]:
    db = database.get_db()
    email = normalize_email(data.email)

    valid, message = validate_password_strength(data.password)
    if not valid:
        raise RecordValidationError(message, field="password")

    existing = await db.users.find_one({"email": email}, {"_id": 0, "user_id": 1})
    if existing:
        raise RecordValidationError("A user with this email already exists", field="email")

    user = User(
        email=email,
        display_name=data.display_name,
        role=data.role,
        password_hash=hash_password(data.password),
    )
    doc = to_document(user)
    await db.users.insert_one(doc)

    await create_audit_log(
        action=AuditAction.USER_CREATED,
        actor_role=ctx.role,
        actor_id=ctx.user_id,
        resource_type="user",
        resource_id=user.user_id,
        metadata={"email": email, "role": user.role.value},
    )
    logger.info(f"User created: {email} ({user.role.value}) by {ctx.label}")

    doc.pop("_id", None)
    doc.pop("password_hash", None)
    return doc


async def list_users(role: Optional[str] = None, include_inactive: bool = True) -> List[Dict[str, Any]]:
    db = database.get_db()
    query: Dict[str, Any] = {}
    if role:
        query["role"] = role
    if not include_inactive:
        query["is_active"] = {"$ne": False}
    return await db.users.find(query, PUBLIC_USER_PROJECTION).sort("email", 1).to_list(length=1000)


async def get_user(user_id: str) -> Dict[str, Any]:
    db = database.get_db()
    user = await db.users.find_one({"user_id": user_id}, PUBLIC_USER_PROJECTION)
    if not user:
        raise RecordNotFoundError("User", user_id)
    return user


async def set_user_active(ctx: RequestContext, user_id: str, is_active: bool) -> Dict[str, Any]:
    db = database.get_db()
    user = await get_user(user_id)

    if user_id == ctx.user_id and not is_active:
        raise RecordValidationError("You cannot deactivate your own account", field="is_active")

    await db.users.update_one(
        {"user_id": user_id},
        {"$set": {"is_active": is_active, "updated_at": datetime.now(timezone.utc)}}
    )

    await create_audit_log(
        action=AuditAction.USER_STATUS_CHANGED,
        actor_role=ctx.role,
        actor_id=ctx.user_id,
        resource_type="user",
        resource_id=user_id,
        before_state={"is_active": user.get("is_active", True)},
        after_state={"is_active": is_active},
    )
    logger.info(f"User {user_id} {'activated' if is_active else 'deactivated'} by {ctx.label}")

    user["is_active"] = is_active
    return user


async def authenticate(email: str, password: str) -> Optional[Dict[str, Any]]:
    """Return the stored user when the credentials match, else None.

    Failed attempts are audited with the reason; the caller decides the response.
    """
    db = database.get_db()
    email = normalize_email(email)
    user = await db.users.find_one({"email": email}, {"_id": 0})

    if not user:
        await create_audit_log(
            action=AuditAction.USER_LOGIN_FAILED,
            metadata={"email": email, "reason": "user_not_found"}
        )
        return None

    if not user.get("password_hash") or not verify_password(password, user["password_hash"]):
        await create_audit_log(
            action=AuditAction.USER_LOGIN_FAILED,
            actor_id=user["user_id"],
            metadata={"email": email, "reason": "invalid_password"}
        )
        return None

    return user


async def record_login(user: Dict[str, Any]) -> None:
    db = database.get_db()
    await db.users.update_one(
        {"user_id": user["user_id"]},
        {"$set": {"last_login_at": datetime.now(timezone.utc)}}
    )
