"""
rally.api.routes.admin — Operator endpoints (JWT‑protected)
============================================================
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from rally.api.deps import ServiceDep, get_current_admin
from rally.api.routes.challenges import challenge_dict
from rally.constants import job_key_for
from rally.database.models import JobState

router = APIRouter(prefix="/admin", tags=["admin"])

AdminDep = Annotated[dict, Depends(get_current_admin)]


class ArchiveRequest(BaseModel):
    reason: str = ""


def _actor(admin: dict) -> str:
    return f"admin:{admin.get('sub', 'unknown')}"


@router.post("/challenges/{challenge_id}/archive")
def archive_challenge(
    challenge_id: int, service: ServiceDep, admin: AdminDep, body: ArchiveRequest | None = None,
):
    reason = body.reason if body else ""
    return challenge_dict(service.archive(challenge_id, actor=_actor(admin), reason=reason))


@router.post("/challenges/{challenge_id}/reschedule")
def reschedule_challenge(challenge_id: int, service: ServiceDep, admin: AdminDep):
    """Queue an immediate lifecycle check."""
    service.get_challenge(challenge_id)
    job = service.scheduler.schedule_advance(challenge_id, service.now())
    return job.to_dict()


@router.get("/challenges/{challenge_id}/transitions")
def list_transitions(challenge_id: int, service: ServiceDep, admin: AdminDep):
    return [
        {
            "id": t.id,
            "from_status": str(t.from_status),
            "to_status": str(t.to_status),
            "reason": t.reason,
            "actor": t.actor,
            "occurred_at": t.occurred_at.isoformat(),
        }
        for t in service.list_transitions(challenge_id)
    ]


@router.get("/jobs")
def list_jobs(
    service: ServiceDep,
    admin: AdminDep,
    state: JobState | None = None,
    challenge_id: int | None = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
):
    key = job_key_for(challenge_id) if challenge_id is not None else None
    jobs = service.scheduler.queue.list_jobs(state=state, job_key=key, limit=limit)
    return [job.to_dict() for job in jobs]
