"""
Nudges API Router

Evaluates the active nudge rules against one quiz attempt and records a
hit for every nudge returned.
"""
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.database import get_db
from services.nudge_service import NudgeService

router = APIRouter(prefix="/v1/nudges", tags=["Nudges"])


class NudgeRequest(BaseModel):
    owner_id: UUID
    attempt_id: UUID


class NudgeOut(BaseModel):
    rule_id: str
    scope: str
    priority: int
    dedupe_key: str
    title: str
    body: str
    cta: Optional[str] = None
    tips: List[str] = []
    hit_id: Optional[str] = None


class NudgeResponse(BaseModel):
    nudges: List[NudgeOut]


@router.post("", response_model=NudgeResponse)
def compose_nudges(request: NudgeRequest, db: Session = Depends(get_db)):
    nudges = NudgeService(db).compose(request.owner_id, request.attempt_id)
    return NudgeResponse(nudges=[NudgeOut(**n.to_dict()) for n in nudges])
