"""
api/routes/v1/vulnerabilities.py -- Vulnerability submission, review and remediation.

Routes:
  POST /api/v1/vulnerabilities                      -- submit finding (Security-team)
  GET  /api/v1/vulnerabilities                      -- list (scoped by role, filterable)
  GET  /api/v1/vulnerabilities/{id}                 -- detail (scoped by role)
  POST /api/v1/vulnerabilities/{id}/approve         -- approve + assign client (admin)
  POST /api/v1/vulnerabilities/{id}/reject          -- reject with comments (admin)
  POST /api/v1/vulnerabilities/{id}/close           -- client marks remediated
  POST /api/v1/vulnerabilities/{id}/reopen          -- client sends back with comments
  POST /api/v1/vulnerabilities/{id}/verification    -- client requests a retest

Every mutation is a single portal.workflow call; role, scope and state
checks live there, not here.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.models import (
    ApproveVulnerabilityRequest,
    ClientStatusEnum,
    CommentRequest,
    SeverityEnum,
    VerificationResponse,
    VulnerabilityCreate,
    VulnerabilityResponse,
    iso_or_none,
)
from auth.dependencies import get_current_user
from auth.models import User
from portal.models import Vulnerability
from portal.workflow import Workflow

# Auth policy: every route requires an approved, unsuspended account.
router = APIRouter(dependencies=[Depends(get_current_user)])


@router.post("/vulnerabilities", response_model=VulnerabilityResponse, status_code=201)
def submit_vulnerability(
    request: Request,
    body: VulnerabilityCreate,
    current_user: User = Depends(get_current_user),
) -> VulnerabilityResponse:
    workflow: Workflow = request.app.state.workflow
    vuln = workflow.submit_vulnerability(
        current_user,
        Vulnerability(
            organization_id=body.organization_id,
            submitted_by=current_user.id,
            title=body.title,
            description=body.description,
            severity=body.severity.value,
            cvss_score=body.cvss_score,
            affected_systems=body.affected_systems,
            remediation=body.remediation,
            service_type=body.service_type.value if body.service_type else None,
            poc=body.poc,
            instances=body.instances,
            cwe_id=body.cwe_id,
        ),
    )
    return VulnerabilityResponse.from_domain(vuln)


@router.get("/vulnerabilities", response_model=list[VulnerabilityResponse])
def list_vulnerabilities(
    request: Request,
    organization_id: Optional[int] = None,
    status: Optional[str] = None,
    client_status: Optional[ClientStatusEnum] = None,
    verification_status: Optional[str] = None,
    severity: Optional[SeverityEnum] = None,
    mine: bool = False,
    current_user: User = Depends(get_current_user),
) -> list[VulnerabilityResponse]:
    """List visible vulnerabilities.

    mine=true narrows a security-team member's list to their own submissions.
    """
    workflow: Workflow = request.app.state.workflow
    filters = {
        "organization_id": organization_id,
        "status": status,
        "client_status": client_status.value if client_status else None,
        "verification_status": verification_status,
        "severity": severity.value if severity else None,
    }
    if mine:
        filters["submitted_by"] = current_user.id
    return [VulnerabilityResponse.from_domain(v) for v in workflow.list_vulnerabilities(current_user, **filters)]


@router.get("/vulnerabilities/{vuln_id}", response_model=VulnerabilityResponse)
def get_vulnerability(
    request: Request,
    vuln_id: int,
    current_user: User = Depends(get_current_user),
) -> VulnerabilityResponse:
    workflow: Workflow = request.app.state.workflow
    return VulnerabilityResponse.from_domain(workflow.get_vulnerability(current_user, vuln_id))


@router.post("/vulnerabilities/{vuln_id}/approve", response_model=VulnerabilityResponse)
def approve_vulnerability(
    request: Request,
    vuln_id: int,
    body: ApproveVulnerabilityRequest,
    current_user: User = Depends(get_current_user),
) -> VulnerabilityResponse:
    workflow: Workflow = request.app.state.workflow
    vuln = workflow.approve_vulnerability(
        current_user,
        vuln_id,
        client_id=body.client_id,
        deadline=iso_or_none(body.deadline),
        comments=body.comments,
    )
    return VulnerabilityResponse.from_domain(vuln)


@router.post("/vulnerabilities/{vuln_id}/reject", response_model=VulnerabilityResponse)
def reject_vulnerability(
    request: Request,
    vuln_id: int,
    body: CommentRequest,
    current_user: User = Depends(get_current_user),
) -> VulnerabilityResponse:
    workflow: Workflow = request.app.state.workflow
    return VulnerabilityResponse.from_domain(workflow.reject_vulnerability(current_user, vuln_id, body.comments))


@router.post("/vulnerabilities/{vuln_id}/close", response_model=VulnerabilityResponse)
def close_vulnerability(
    request: Request,
    vuln_id: int,
    body: Optional[CommentRequest] = None,
    current_user: User = Depends(get_current_user),
) -> VulnerabilityResponse:
    workflow: Workflow = request.app.state.workflow
    comments = body.comments if body else None
    return VulnerabilityResponse.from_domain(workflow.close_vulnerability(current_user, vuln_id, comments))


@router.post("/vulnerabilities/{vuln_id}/reopen", response_model=VulnerabilityResponse)
def reopen_vulnerability(
    request: Request,
    vuln_id: int,
    body: CommentRequest,
    current_user: User = Depends(get_current_user),
) -> VulnerabilityResponse:
    workflow: Workflow = request.app.state.workflow
    return VulnerabilityResponse.from_domain(workflow.reopen_vulnerability(current_user, vuln_id, body.comments))


@router.post("/vulnerabilities/{vuln_id}/verification", response_model=VerificationResponse, status_code=201)
def request_verification(
    request: Request,
    vuln_id: int,
    current_user: User = Depends(get_current_user),
) -> VerificationResponse:
    workflow: Workflow = request.app.state.workflow
    return VerificationResponse.from_domain(workflow.request_verification(current_user, vuln_id))
