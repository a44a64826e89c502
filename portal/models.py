"""
portal/models.py -- Domain dataclasses for the VAPT portal.

These are pure data containers with zero logic. Status transitions and role
checks live in portal/workflow.py; persistence lives in portal/store.py.

Separation of concerns: these dataclasses are the portal's domain truth, just
as auth/models.py is the identity layer's. portal/ may import auth/, never the
reverse.
"""

from dataclasses import dataclass, field
from typing import Optional

# Organization / vulnerability approval status.
PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"

SEVERITIES = ("Critical", "High", "Medium", "Low", "Informational")
SERVICE_KEYS = ("web", "android", "ios")

# Vulnerability.client_status
CLIENT_OPEN = "open"
CLIENT_CLOSED = "closed"
CLIENT_REOPENED = "reopened"

# Vulnerability.verification_status
NOT_SUBMITTED = "not_submitted"
PENDING_VERIFICATION = "pending_verification"
VERIFIED = "verified"
VERIFICATION_REJECTED = "verification_rejected"

# Verification.verification_status
VERIFICATION_PENDING = "pending"
VERIFICATION_ASSIGNED = "assigned"
VERIFICATION_VERIFIED = "verified"
VERIFICATION_FAILED = "rejected"

# Notification.type values written by the portal.
NOTIFICATION_TYPES = (
    "user_signup",
    "organization_signup",
    "email_access_request",
    "approval",
    "vulnerability_submitted",
    "vulnerability_approved",
    "vulnerability_rejected",
    "vulnerability_assigned",
    "vulnerability_reopened",
    "verification_requested",
    "verification_assigned",
    "verification_completed",
    "verification_rejected",
    "security_team_assigned",
)


@dataclass
class Organization:
    """A client organization that has signed up for VAPT services.

    services maps each of "web", "android", "ios" to None (not requested) or a
    dict {"tier", "environment", "details"}.

    id is None before the record is written to the database.
    """

    name: str
    contact_email: str
    id: Optional[int] = None
    contact_phone: Optional[str] = None
    address: Optional[str] = None
    services: dict = field(default_factory=dict)
    status: str = PENDING  # "pending" | "approved" | "rejected"
    notes: Optional[str] = None
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_at: str = ""


@dataclass
class Vulnerability:
    """A finding submitted by a security-team member against an organization.

    status is the admin review state. client_status stays None until the
    finding is approved and handed to a client; verification_status tracks
    the retest cycle after the client closes it.
    """

    organization_id: int
    submitted_by: int
    title: str
    description: str
    severity: str  # one of SEVERITIES
    id: Optional[int] = None
    cvss_score: Optional[float] = None
    affected_systems: Optional[str] = None
    remediation: Optional[str] = None
    service_type: Optional[str] = None  # one of SERVICE_KEYS
    poc: Optional[str] = None
    instances: list[str] = field(default_factory=list)
    cwe_id: Optional[str] = None
    status: str = PENDING
    admin_comments: Optional[str] = None
    approved_by: Optional[int] = None
    approved_at: Optional[str] = None
    assigned_to_client: Optional[int] = None
    client_status: Optional[str] = None  # "open" | "closed" | "reopened"
    client_deadline: Optional[str] = None
    client_comments: Optional[str] = None
    client_updated_at: Optional[str] = None
    verification_status: str = NOT_SUBMITTED
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Verification:
    """A client's request to have a closed vulnerability retested."""

    vulnerability_id: int
    submitted_by_client: int
    id: Optional[int] = None
    assigned_to_security_team: Optional[int] = None
    verification_status: str = VERIFICATION_PENDING  # "pending" | "assigned" | "verified" | "rejected"
    admin_comments: Optional[str] = None
    security_team_comments: Optional[str] = None
    verification_deadline: Optional[str] = None
    assigned_at: Optional[str] = None
    verified_at: Optional[str] = None
    created_at: str = ""


@dataclass
class Notification:
    """A stored inbox item. user_id None means a broadcast to every admin.

    organization_id is denormalized out of the payload so an organization's
    activity feed can be read with an indexed query.
    """

    type: str
    id: Optional[int] = None
    user_id: Optional[int] = None
    actor_id: Optional[int] = None
    organization_id: Optional[int] = None
    payload: dict = field(default_factory=dict)
    read: bool = False
    created_at: str = ""


@dataclass
class SecurityTeamAssignment:
    """Links a security-team member to an organization they may test."""

    security_team_user_id: int
    organization_id: int
    id: Optional[int] = None
    services: list[str] = field(default_factory=list)
    deadline: Optional[str] = None
    assigned_by: Optional[int] = None
    assigned_at: str = ""


@dataclass
class ActivityLog:
    """Append-only audit entry. Records are never updated or deleted."""

    action: str
    entity_type: str
    entity_id: Optional[int] = None
    id: Optional[int] = None
    actor_id: Optional[int] = None
    organization_id: Optional[int] = None
    detail: dict = field(default_factory=dict)
    created_at: str = ""
