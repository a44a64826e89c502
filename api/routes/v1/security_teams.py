"""
api/routes/v1/security_teams.py -- Security-team roster, assignments and deadlines.

Routes:
  GET    /api/v1/security-teams                               -- members with assignment counts (admin)
  GET    /api/v1/security-teams/me/deadlines                  -- caller's project + verification deadlines
  GET    /api/v1/security-teams/{user_id}                     -- member detail (admin)
  POST   /api/v1/security-teams/{user_id}/assignments         -- assign member to organization (admin)
  DELETE /api/v1/security-teams/assignments/{assignment_id}   -- remove assignment (admin)

/me/deadlines is declared before /{user_id} so "me" is never parsed as an ID.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import (
    AssignmentCreate,
    AssignmentResponse,
    DeadlinesResponse,
    SecurityMemberDetail,
    SecurityMemberResponse,
    UserResponse,
    iso_or_none,
)
from auth.dependencies import require_admin, require_roles
from auth.models import SECURITY_TEAM, User
from auth.store import UserStore
from core.config import get_settings
from portal.workflow import Workflow

router = APIRouter()


@router.get("/security-teams", response_model=list[SecurityMemberResponse])
def list_security_team(
    request: Request,
    current_user: User = Depends(require_admin),
) -> list[SecurityMemberResponse]:
    user_store: UserStore = request.app.state.user_store
    workflow: Workflow = request.app.state.workflow
    counts = workflow.store.assignment_counts()
    return [
        SecurityMemberResponse(user=UserResponse.from_domain(u), assignment_count=counts.get(u.id, 0))
        for u in user_store.list_users(role=SECURITY_TEAM)
    ]


@router.get("/security-teams/me/deadlines", response_model=DeadlinesResponse)
def my_deadlines(
    request: Request,
    current_user: User = Depends(require_roles(SECURITY_TEAM)),
) -> DeadlinesResponse:
    """Return the caller's overdue, approaching and upcoming deadlines."""
    workflow: Workflow = request.app.state.workflow
    deadlines = workflow.store.get_deadlines(current_user.id, approaching_days=get_settings().deadline_warning_days)
    return DeadlinesResponse(**deadlines)


@router.get("/security-teams/{user_id}", response_model=SecurityMemberDetail)
def get_security_member(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_admin),
) -> SecurityMemberDetail:
    user_store: UserStore = request.app.state.user_store
    workflow: Workflow = request.app.state.workflow
    member = user_store.get_by_id(user_id)
    if member is None or member.role != SECURITY_TEAM:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Security-team member not found."},
        )
    submitted = workflow.store.status_counts("vulnerabilities", "status", submitted_by=user_id)
    return SecurityMemberDetail(
        user=UserResponse.from_domain(member),
        assignments=[
            AssignmentResponse.from_domain(a) for a in workflow.store.list_assignments(security_team_user_id=user_id)
        ],
        submitted_count=sum(submitted.values()),
        verification_counts=workflow.store.status_counts(
            "verifications", "verification_status", assigned_to_security_team=user_id
        ),
    )


@router.post("/security-teams/{user_id}/assignments", response_model=AssignmentResponse, status_code=201)
def create_assignment(
    request: Request,
    user_id: int,
    body: AssignmentCreate,
    current_user: User = Depends(require_admin),
) -> AssignmentResponse:
    workflow: Workflow = request.app.state.workflow
    assignment = workflow.assign_security_team(
        current_user,
        member_id=user_id,
        org_id=body.organization_id,
        services=[s.value for s in body.services],
        deadline=iso_or_none(body.deadline),
    )
    return AssignmentResponse.from_domain(assignment)


@router.delete("/security-teams/assignments/{assignment_id}", status_code=204)
def delete_assignment(
    request: Request,
    assignment_id: int,
    current_user: User = Depends(require_admin),
) -> Response:
    workflow: Workflow = request.app.state.workflow
    workflow.unassign_security_team(current_user, assignment_id)
    return Response(status_code=204)
