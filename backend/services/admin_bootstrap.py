"""
Idempotent ADMIN bootstrap from env.
- When BOOTSTRAP_ADMIN_EMAIL and BOOTSTRAP_ADMIN_PASSWORD are set: if a user with that email
  exists, make sure it is an active Admin; otherwise create one with a hashed password.
- Optional: BOOTSTRAP_ADMIN_NAME.
Never logs or returns plaintext passwords.
"""
import os
import logging
from datetime import datetime, timezone

from auth import hash_password
from database import database
from models import AuditAction, User, UserRole, to_document
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

BOOTSTRAP_ADMIN_EMAIL_KEY = "BOOTSTRAP_ADMIN_EMAIL"
BOOTSTRAP_ADMIN_PASSWORD_KEY = "BOOTSTRAP_ADMIN_PASSWORD"
BOOTSTRAP_ADMIN_NAME_KEY = "BOOTSTRAP_ADMIN_NAME"


async def run_bootstrap_admin() -> dict:
    """
    Returns dict with keys: action (str), user_id (str|None), message (str).
    """
    email = os.environ.get(BOOTSTRAP_ADMIN_EMAIL_KEY, "").strip().lower()
    password = os.environ.get(BOOTSTRAP_ADMIN_PASSWORD_KEY, "").strip()
    if not email or not password:
        return {"action": "skipped", "user_id": None, "message": "BOOTSTRAP_ADMIN_EMAIL/PASSWORD not set"}

    db = database.get_db()

    existing = await db.users.find_one({"email": email}, {"_id": 0, "user_id": 1, "role": 1, "is_active": 1})
    if existing:
        if existing.get("role") == UserRole.ADMIN.value and existing.get("is_active", True):
            logger.info("Bootstrap admin: already exists (email=%s)", email)
            return {
                "action": "already_exists",
                "user_id": existing["user_id"],
                "message": "Admin already exists for this email",
            }
        await db.users.update_one(
            {"user_id": existing["user_id"]},
            {"$set": {
                "role": UserRole.ADMIN.value,
                "is_active": True,
                "updated_at": datetime.now(timezone.utc),
            }}
        )
        await create_audit_log(
            action=AuditAction.USER_STATUS_CHANGED,
            actor_id=existing["user_id"],
            resource_type="user",
            resource_id=existing["user_id"],
            before_state={"role": existing.get("role"), "is_active": existing.get("is_active", True)},
            after_state={"role": UserRole.ADMIN.value, "is_active": True},
            metadata={"email": email, "method": "bootstrap_env"},
        )
        logger.info("Bootstrap admin: promoted existing user (id=%s)", existing["user_id"])
        return {
            "action": "promoted",
            "user_id": existing["user_id"],
            "message": "Existing user promoted to Admin",
        }

    user = User(
        email=email,
        display_name=os.environ.get(BOOTSTRAP_ADMIN_NAME_KEY, "").strip() or None,
        role=UserRole.ADMIN,
        password_hash=hash_password(password),
    )
    await db.users.insert_one(to_document(user))
    await create_audit_log(
        action=AuditAction.USER_CREATED,
        actor_id=user.user_id,
        resource_type="user",
        resource_id=user.user_id,
        metadata={"email": email, "method": "bootstrap_env"},
    )
    logger.info("Bootstrap admin: created (email=%s)", email)
    return {
        "action": "created",
        "user_id": user.user_id,
        "message": "Admin created from env",
    }
