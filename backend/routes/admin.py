from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from typing import Optional
from database import database
from middleware import RequestContext, admin_route_guard
from models import AuditAction
from utils.audit import create_audit_log, get_record_history
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"])


class RunJobRequest(BaseModel):
    job: str


@router.get("/audit-logs")
async def get_audit_logs(
    skip: int = 0,
    limit: int = 100,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    actor_id: Optional[str] = None,
    ctx: RequestContext = Depends(admin_route_guard),
):
    """Get audit logs with filtering (admin only)."""
    db = database.get_db()

    query = {}
    if action:
        query["action"] = action
    if resource_type:
        query["resource_type"] = resource_type
    if actor_id:
        query["actor_id"] = actor_id

    logs = await db.audit_logs.find(
        query,
        {"_id": 0}
    ).sort("timestamp", -1).skip(skip).limit(limit).to_list(limit)

    total = await db.audit_logs.count_documents(query)

    return {
        "logs": logs,
        "total": total,
        "skip": skip,
        "limit": limit,
    }


@router.get("/audit-logs/{resource_type}/{resource_id}")
async def get_record_history(
    resource_type: str,
    resource_id: str,
    limit: int = 50,
    ctx: RequestContext = Depends(admin_route_guard),
):
    """Audit trail of one record, newest first."""
    logs = await get_record_history(resource_type, resource_id, limit=limit)
    return {"logs": logs, "total": len(logs)}


@router.get("/jobs/status")
async def get_jobs_status(ctx: RequestContext = Depends(admin_route_guard)):
    """Get background jobs status (read-only monitoring)."""
    db = database.get_db()

    last_sweep = await db.audit_logs.find_one(
        {"action": AuditAction.EXPIRY_SWEEP.value},
        {"_id": 0},
        sort=[("timestamp", -1)]
    )

    from server import scheduler
    scheduler_jobs = []
    for job in scheduler.get_jobs():
        scheduler_jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None
        })

    return {
        "expiry_sweep": {
            "last_run": last_sweep["timestamp"] if last_sweep else None,
        },
        "scheduled_jobs": scheduler_jobs,
        "system_status": "operational"
    }


@router.post("/jobs/run")
async def run_job_now(body: RunJobRequest, ctx: RequestContext = Depends(admin_route_guard)):
    """Run a single background job by id (admin only)."""
    from job_runner import JOB_RUNNERS

    job_id = (body.job or "").strip()
    if not job_id or job_id not in JOB_RUNNERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid job. Use one of: {', '.join(sorted(JOB_RUNNERS.keys()))}"
        )

    result = await JOB_RUNNERS[job_id]()
    message = (result.get("message") if result else None) or f"Job {job_id} completed"
    await create_audit_log(
        action=AuditAction.JOB_RUN_MANUAL,
        actor_role=ctx.role,
        actor_id=ctx.user_id,
        metadata={"job_id": job_id, "result": result},
    )
    return {"success": True, "job": job_id, "message": message, "count": (result or {}).get("count")}
