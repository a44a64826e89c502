"""
api/routes/v1/verifications.py -- Fix-verification queue.

Routes:
  GET  /api/v1/verifications               -- list (admins all, members assigned, clients own)
  GET  /api/v1/verifications/{id}          -- detail (same scoping)
  POST /api/v1/verifications/{id}/assign   -- hand to a security-team member (admin)
  POST /api/v1/verifications/{id}/verify   -- fix confirmed (assigned member)
  POST /api/v1/verifications/{id}/reject   -- fix failed, comments required (assigned member)

Verifications are created by POST /vulnerabilities/{id}/verification.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.models import (
    AssignVerificationRequest,
    CommentRequest,
    VerificationResponse,
    VerificationStatusEnum,
    iso_or_none,
)
from auth.dependencies import get_current_user
from auth.models import User
from portal.workflow import Workflow

router = APIRouter(dependencies=[Depends(get_current_user)])


@router.get("/verifications", response_model=list[VerificationResponse])
def list_verifications(
    request: Request,
    status: Optional[VerificationStatusEnum] = None,
    current_user: User = Depends(get_current_user),
) -> list[VerificationResponse]:
    workflow: Workflow = request.app.state.workflow
    verifications = workflow.list_verifications(current_user, status=status.value if status else None)
    return [VerificationResponse.from_domain(v) for v in verifications]


@router.get("/verifications/{verification_id}", response_model=VerificationResponse)
def get_verification(
    request: Request,
    verification_id: int,
    current_user: User = Depends(get_current_user),
) -> VerificationResponse:
    workflow: Workflow = request.app.state.workflow
    return VerificationResponse.from_domain(workflow.get_verification(current_user, verification_id))


@router.post("/verifications/{verification_id}/assign", response_model=VerificationResponse)
def assign_verification(
    request: Request,
    verification_id: int,
    body: AssignVerificationRequest,
    current_user: User = Depends(get_current_user),
) -> VerificationResponse:
    workflow: Workflow = request.app.state.workflow
    verification = workflow.assign_verification(
        current_user,
        verification_id,
        member_id=body.security_team_user_id,
        deadline=iso_or_none(body.deadline),
        comments=body.comments,
    )
    return VerificationResponse.from_domain(verification)


@router.post("/verifications/{verification_id}/verify", response_model=VerificationResponse)
def verify_fix(
    request: Request,
    verification_id: int,
    body: Optional[CommentRequest] = None,
    current_user: User = Depends(get_current_user),
) -> VerificationResponse:
    workflow: Workflow = request.app.state.workflow
    comments = body.comments if body else None
    return VerificationResponse.from_domain(workflow.verify_fix(current_user, verification_id, comments))


@router.post("/verifications/{verification_id}/reject", response_model=VerificationResponse)
def reject_fix(
    request: Request,
    verification_id: int,
    body: CommentRequest,
    current_user: User = Depends(get_current_user),
) -> VerificationResponse:
    workflow: Workflow = request.app.state.workflow
    return VerificationResponse.from_domain(workflow.reject_fix(current_user, verification_id, body.comments))
