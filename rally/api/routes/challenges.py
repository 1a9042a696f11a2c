"""
rally.api.routes.challenges — Challenge & participation endpoints
==================================================================

Thin translation between HTTP and :class:`ChallengeService`.  Errors
raised by the service are mapped to status codes in ``rally.api.main``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from rally.api.deps import ServiceDep, get_current_user
from rally.constants import RANK_BADGES
from rally.database.models import Challenge, ChallengeStatus, Participant
from rally.services.challenge_service import ChallengeDraft

router = APIRouter(tags=["challenges"])

UserDep = Annotated[str, Depends(get_current_user)]


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ChallengeCreate(BaseModel):
    group_id: str
    name: str
    challenge_type: str
    start_at: datetime
    end_at: datetime
    description: str | None = None
    goal_unit: str | None = None
    goal_quantity: int | None = None
    allow_late_joins: bool = True
    auto_enroll: bool = False


class ContributionCreate(BaseModel):
    quantity: int = Field(ge=0)
    note: str | None = None
    recorded_at: datetime | None = None
    source_ref: str | None = Field(default=None, max_length=128)


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------
def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def challenge_dict(c: Challenge) -> dict:
    return {
        "id": c.id,
        "group_id": c.group_id,
        "name": c.name,
        "description": c.description,
        "challenge_type": c.challenge_type,
        "start_at": _iso(c.start_at),
        "end_at": _iso(c.end_at),
        "goal_unit": c.goal_unit,
        "goal_quantity": c.goal_quantity,
        "allow_late_joins": c.allow_late_joins,
        "auto_enroll": c.auto_enroll,
        "status": str(c.status),
        "version": c.version,
        "created_by": c.created_by,
        "published_at": _iso(c.published_at),
        "activated_at": _iso(c.activated_at),
        "ended_at": _iso(c.ended_at),
        "archived_at": _iso(c.archived_at),
        "final_total": c.final_total,
    }


def participant_dict(p: Participant) -> dict:
    return {
        "id": p.id,
        "challenge_id": p.challenge_id,
        "user_id": p.user_id,
        "joined_at": _iso(p.joined_at),
        "withdrawn_at": _iso(p.withdrawn_at),
        "active": p.is_active,
    }


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------
@router.post("/challenges", status_code=status.HTTP_201_CREATED)
def create_challenge(body: ChallengeCreate, service: ServiceDep, user_id: UserDep):
    challenge_id = service.create_challenge(ChallengeDraft(
        group_id=body.group_id,
        name=body.name,
        challenge_type=body.challenge_type,
        start_at=body.start_at,
        end_at=body.end_at,
        description=body.description,
        goal_unit=body.goal_unit,
        goal_quantity=body.goal_quantity,
        allow_late_joins=body.allow_late_joins,
        auto_enroll=body.auto_enroll,
        created_by=user_id,
    ))
    return challenge_dict(service.get_challenge(challenge_id))


@router.get("/challenges/{challenge_id}")
def get_challenge(challenge_id: int, service: ServiceDep):
    return challenge_dict(service.get_challenge(challenge_id))


@router.get("/groups/{group_id}/challenges")
def list_group_challenges(
    group_id: str,
    service: ServiceDep,
    status_filter: Annotated[ChallengeStatus | None, Query(alias="status")] = None,
):
    return [challenge_dict(c) for c in service.list_challenges(group_id, status_filter)]


@router.get("/users/me/challenges")
def list_my_challenges(
    service: ServiceDep,
    user_id: UserDep,
    status_filter: Annotated[ChallengeStatus | None, Query(alias="status")] = None,
):
    return [challenge_dict(c) for c in service.list_challenges_for_user(user_id, status_filter)]


@router.post("/challenges/{challenge_id}/publish")
def publish_challenge(challenge_id: int, service: ServiceDep, user_id: UserDep):
    return challenge_dict(service.publish(challenge_id, actor=user_id))


# ---------------------------------------------------------------------------
# Participation
# ---------------------------------------------------------------------------
@router.post("/challenges/{challenge_id}/join", status_code=status.HTTP_201_CREATED)
def join_challenge(challenge_id: int, service: ServiceDep, user_id: UserDep):
    return participant_dict(service.join(challenge_id, user_id))


@router.post("/challenges/{challenge_id}/withdraw")
def withdraw_from_challenge(challenge_id: int, service: ServiceDep, user_id: UserDep):
    return participant_dict(service.withdraw(challenge_id, user_id))


@router.post("/challenges/{challenge_id}/contributions", status_code=status.HTTP_201_CREATED)
def record_contribution(
    challenge_id: int, body: ContributionCreate, service: ServiceDep, user_id: UserDep,
):
    contribution, duplicate = service.record_contribution(
        challenge_id,
        user_id,
        body.quantity,
        body.note,
        recorded_at=body.recorded_at,
        source_ref=body.source_ref,
    )
    return {
        "id": contribution.id,
        "challenge_id": contribution.challenge_id,
        "participant_id": contribution.participant_id,
        "quantity": contribution.quantity,
        "recorded_at": _iso(contribution.recorded_at),
        "note": contribution.note,
        "source_ref": contribution.source_ref,
        "duplicate": duplicate,
    }


@router.get("/challenges/{challenge_id}/participants")
def list_participants(challenge_id: int, service: ServiceDep):
    return [participant_dict(p) for p in service.list_participants(challenge_id)]


@router.get("/challenges/{challenge_id}/leaderboard")
def get_leaderboard(
    challenge_id: int,
    service: ServiceDep,
    as_of: datetime | None = None,
    limit: Annotated[int | None, Query(ge=1, le=500)] = None,
):
    snapshot = service.get_leaderboard(challenge_id, as_of=as_of, limit=limit)
    data = snapshot.to_dict()
    for row in data["entries"]:
        row["badge"] = RANK_BADGES[row["rank"] - 1] if row["rank"] <= len(RANK_BADGES) else None
    return data
