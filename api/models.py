"""
API request and response models for the VAPT portal REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
portal/models.py, which own the internal domain representation. Route
handlers map between the two (see the from_domain factory methods).

Separation of concerns: auth/ + portal/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from auth.models import AccessRequest, User
from portal.models import (
    ActivityLog,
    Notification,
    Organization,
    SecurityTeamAssignment,
    Verification,
    Vulnerability,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
PASSWORD_MIN = 8
PASSWORD_MAX = 72
# bcrypt refuses secrets longer than this many bytes.
PASSWORD_MAX_BYTES = 72


def check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValueError(f"password must be at most {PASSWORD_MAX_BYTES} bytes when UTF-8 encoded")
    return value


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize deadlines to UTC. Naive datetimes are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso_or_none(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    super_admin = "Super-admin"
    admin = "Admin"
    security_team = "Security-team"
    client = "Client"


class StaffSignupRoleEnum(str, Enum):
    admin = "Admin"
    security_team = "Security-team"


class ApprovalStatusEnum(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class SeverityEnum(str, Enum):
    critical = "Critical"
    high = "High"
    medium = "Medium"
    low = "Low"
    informational = "Informational"


class ServiceTypeEnum(str, Enum):
    web = "web"
    android = "android"
    ios = "ios"


class ServiceTierEnum(str, Enum):
    standard = "Standard"
    essential = "Essential"


class EnvironmentEnum(str, Enum):
    production = "production"
    staging = "staging"
    development = "development"


class ClientStatusEnum(str, Enum):
    open = "open"
    closed = "closed"
    reopened = "reopened"


class VerificationStatusEnum(str, Enum):
    pending = "pending"
    assigned = "assigned"
    verified = "verified"
    rejected = "rejected"


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class SetupRequest(BaseModel):
    """Request body for POST /setup (first Super-admin)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    full_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return check_password_bytes(value)


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return check_password_bytes(value)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str
    expires_in: int
    user_id: int
    email: str
    role: str


class UserResponse(BaseModel):
    """A user profile. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    full_name: Optional[str]
    role: str
    status: str
    suspended: bool
    organization_id: Optional[int]
    designation: Optional[str]
    created_at: str
    last_login: Optional[str] = None

    @classmethod
    def from_domain(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            role=user.role,
            status=user.status,
            suspended=user.suspended,
            organization_id=user.organization_id,
            designation=user.designation,
            created_at=user.created_at or "",
            last_login=user.last_login,
        )


class ProfileUpdate(BaseModel):
    """Request body for PATCH /api/v1/auth/me. Role and organization are admin-managed."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    full_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    designation: Optional[str] = Field(default=None, max_length=255)


class StaffSignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup (staff self-registration)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    full_name: str = Field(min_length=1, max_length=255)
    role: StaffSignupRoleEnum
    designation: Optional[str] = Field(default=None, max_length=255)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return check_password_bytes(value)


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


class ServiceRequest(BaseModel):
    """One requested service (web, android or ios)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    tier: ServiceTierEnum
    environment: EnvironmentEnum = EnvironmentEnum.production
    details: Optional[str] = Field(default=None, max_length=2000)


class OrganizationServices(BaseModel):
    web: Optional[ServiceRequest] = None
    android: Optional[ServiceRequest] = None
    ios: Optional[ServiceRequest] = None


class OrganizationUserEntry(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    full_name: Optional[str] = Field(default=None, max_length=255)


class OrganizationSignupRequest(BaseModel):
    """Request body for POST /api/v1/organizations/signup.

    Every listed user gets an access request sharing the one password; only
    its bcrypt hash is stored. At least one service must be requested.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    contact_email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    contact_phone: Optional[str] = Field(default=None, max_length=50)
    address: Optional[str] = Field(default=None, max_length=1000)
    services: OrganizationServices
    users: list[OrganizationUserEntry] = Field(min_length=1, max_length=20)
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return check_password_bytes(value)

    @field_validator("users")
    @classmethod
    def unique_emails(cls, users: list[OrganizationUserEntry]) -> list[OrganizationUserEntry]:
        seen: set[str] = set()
        for entry in users:
            key = entry.email.lower()
            if key in seen:
                raise ValueError(f"duplicate user email: {entry.email}")
            seen.add(key)
        return users

    @model_validator(mode="after")
    def at_least_one_service(self) -> "OrganizationSignupRequest":
        if not any(getattr(self.services, key) for key in ("web", "android", "ios")):
            raise ValueError("at least one service must be requested")
        return self


class OrganizationSignupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    organization_id: int
    access_request_ids: list[int]
    status: str


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    contact_email: str
    contact_phone: Optional[str]
    address: Optional[str]
    services: dict
    status: str
    notes: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_domain(cls, org: Organization) -> "OrganizationResponse":
        return cls(
            id=org.id,
            name=org.name,
            contact_email=org.contact_email,
            contact_phone=org.contact_phone,
            address=org.address,
            services=org.services,
            status=org.status,
            notes=org.notes,
            created_at=org.created_at,
            updated_at=org.updated_at,
        )


class OrganizationUpdate(BaseModel):
    """Request body for PATCH /api/v1/organizations/{id}. Admin only."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    status: Optional[ApprovalStatusEnum] = None
    notes: Optional[str] = Field(default=None, max_length=5000)
    contact_email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    contact_phone: Optional[str] = Field(default=None, max_length=50)
    address: Optional[str] = Field(default=None, max_length=1000)


class ActivityItem(BaseModel):
    """One row in an organization's activity feed (audit entry or notification)."""

    model_config = ConfigDict(frozen=True)

    source: str  # "activity" | "notification"
    id: int
    kind: str
    actor_id: Optional[int]
    detail: dict
    created_at: str

    @classmethod
    def from_activity(cls, entry: ActivityLog) -> "ActivityItem":
        detail = dict(entry.detail)
        detail.setdefault("entity_type", entry.entity_type)
        detail.setdefault("entity_id", entry.entity_id)
        return cls(
            source="activity",
            id=entry.id,
            kind=entry.action,
            actor_id=entry.actor_id,
            detail=detail,
            created_at=entry.created_at,
        )

    @classmethod
    def from_notification(cls, n: Notification) -> "ActivityItem":
        return cls(
            source="notification",
            id=n.id,
            kind=n.type,
            actor_id=n.actor_id,
            detail=n.payload,
            created_at=n.created_at,
        )


# ---------------------------------------------------------------------------
# Security-team assignments
# ---------------------------------------------------------------------------


class AssignmentCreate(BaseModel):
    """Request body for POST /api/v1/security-teams/{id}/assignments."""

    organization_id: int
    services: list[ServiceTypeEnum] = Field(default_factory=list, max_length=3)
    deadline: Optional[datetime] = None

    @field_validator("deadline")
    @classmethod
    def deadline_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class AssignmentResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    security_team_user_id: int
    organization_id: int
    services: list[str]
    deadline: Optional[str]
    assigned_by: Optional[int]
    assigned_at: str

    @classmethod
    def from_domain(cls, a: SecurityTeamAssignment) -> "AssignmentResponse":
        return cls(
            id=a.id,
            security_team_user_id=a.security_team_user_id,
            organization_id=a.organization_id,
            services=a.services,
            deadline=a.deadline,
            assigned_by=a.assigned_by,
            assigned_at=a.assigned_at,
        )


class SecurityMemberResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse
    assignment_count: int


class SecurityMemberDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse
    assignments: list[AssignmentResponse]
    submitted_count: int
    verification_counts: dict[str, int]


class DeadlinesResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    overdue: list[dict]
    approaching: list[dict]
    upcoming: list[dict]


# ---------------------------------------------------------------------------
# Vulnerabilities
# ---------------------------------------------------------------------------


class VulnerabilityCreate(BaseModel):
    """Request body for POST /api/v1/vulnerabilities."""

    model_config = ConfigDict(str_strip_whitespace=True)

    organization_id: int
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1, max_length=20000)
    severity: SeverityEnum
    cvss_score: Optional[float] = Field(default=None, ge=0.0, le=10.0)
    affected_systems: Optional[str] = Field(default=None, max_length=5000)
    remediation: Optional[str] = Field(default=None, max_length=20000)
    service_type: Optional[ServiceTypeEnum] = None
    poc: Optional[str] = Field(default=None, max_length=20000)
    instances: list[str] = Field(default_factory=list, max_length=100)
    cwe_id: Optional[str] = Field(default=None, pattern=r"^CWE-\d{1,5}$")

    @field_validator("cwe_id", mode="before")
    @classmethod
    def normalize_cwe(cls, value):
        if isinstance(value, str):
            return value.strip().upper() or None
        return value


class VulnerabilityResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    organization_id: int
    submitted_by: int
    title: str
    description: str
    severity: str
    cvss_score: Optional[float]
    affected_systems: Optional[str]
    remediation: Optional[str]
    service_type: Optional[str]
    poc: Optional[str]
    instances: list[str]
    cwe_id: Optional[str]
    status: str
    admin_comments: Optional[str]
    approved_by: Optional[int]
    approved_at: Optional[str]
    assigned_to_client: Optional[int]
    client_status: Optional[str]
    client_deadline: Optional[str]
    client_comments: Optional[str]
    client_updated_at: Optional[str]
    verification_status: str
    created_at: str
    updated_at: str

    @classmethod
    def from_domain(cls, v: Vulnerability) -> "VulnerabilityResponse":
        return cls(
            id=v.id,
            organization_id=v.organization_id,
            submitted_by=v.submitted_by,
            title=v.title,
            description=v.description,
            severity=v.severity,
            cvss_score=v.cvss_score,
            affected_systems=v.affected_systems,
            remediation=v.remediation,
            service_type=v.service_type,
            poc=v.poc,
            instances=v.instances,
            cwe_id=v.cwe_id,
            status=v.status,
            admin_comments=v.admin_comments,
            approved_by=v.approved_by,
            approved_at=v.approved_at,
            assigned_to_client=v.assigned_to_client,
            client_status=v.client_status,
            client_deadline=v.client_deadline,
            client_comments=v.client_comments,
            client_updated_at=v.client_updated_at,
            verification_status=v.verification_status,
            created_at=v.created_at,
            updated_at=v.updated_at,
        )


class ApproveVulnerabilityRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    client_id: int
    deadline: Optional[datetime] = None
    comments: Optional[str] = Field(default=None, max_length=5000)

    @field_validator("deadline")
    @classmethod
    def deadline_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class CommentRequest(BaseModel):
    """Body for transitions that take an optional (or, for rejections, required) comment."""

    model_config = ConfigDict(str_strip_whitespace=True)

    comments: Optional[str] = Field(default=None, max_length=5000)


# ---------------------------------------------------------------------------
# Verifications
# ---------------------------------------------------------------------------


class VerificationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    vulnerability_id: int
    submitted_by_client: int
    assigned_to_security_team: Optional[int]
    verification_status: str
    admin_comments: Optional[str]
    security_team_comments: Optional[str]
    verification_deadline: Optional[str]
    assigned_at: Optional[str]
    verified_at: Optional[str]
    created_at: str

    @classmethod
    def from_domain(cls, v: Verification) -> "VerificationResponse":
        return cls(
            id=v.id,
            vulnerability_id=v.vulnerability_id,
            submitted_by_client=v.submitted_by_client,
            assigned_to_security_team=v.assigned_to_security_team,
            verification_status=v.verification_status,
            admin_comments=v.admin_comments,
            security_team_comments=v.security_team_comments,
            verification_deadline=v.verification_deadline,
            assigned_at=v.assigned_at,
            verified_at=v.verified_at,
            created_at=v.created_at,
        )


class AssignVerificationRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    security_team_user_id: int
    deadline: Optional[datetime] = None
    comments: Optional[str] = Field(default=None, max_length=5000)

    @field_validator("deadline")
    @classmethod
    def deadline_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


# ---------------------------------------------------------------------------
# Notifications and dashboard
# ---------------------------------------------------------------------------


class NotificationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    type: str
    user_id: Optional[int]
    actor_id: Optional[int]
    organization_id: Optional[int]
    payload: dict
    read: bool
    created_at: str

    @classmethod
    def from_domain(cls, n: Notification) -> "NotificationResponse":
        return cls(
            id=n.id,
            type=n.type,
            user_id=n.user_id,
            actor_id=n.actor_id,
            organization_id=n.organization_id,
            payload=n.payload,
            read=n.read,
            created_at=n.created_at,
        )


class MarkAllReadResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    updated: int


class DashboardResponse(BaseModel):
    """Response for GET /api/v1/dashboard. Which count groups are filled depends on role."""

    model_config = ConfigDict(frozen=True)

    role: str
    organizations: dict[str, int] = Field(default_factory=dict)
    vulnerabilities: dict[str, int] = Field(default_factory=dict)
    client_status: dict[str, int] = Field(default_factory=dict)
    verifications: dict[str, int] = Field(default_factory=dict)
    pending_users: Optional[int] = None
    pending_access_requests: Optional[int] = None
    unread_notifications: int = 0
    deadlines: Optional[DeadlinesResponse] = None


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class AdminUserPatch(BaseModel):
    """Request body for PATCH /api/v1/admin/users/{id}. role changes need Super-admin."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    role: Optional[RoleEnum] = None
    full_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    organization_id: Optional[int] = None
    designation: Optional[str] = Field(default=None, max_length=255)


class UserOrRequestTarget(BaseModel):
    """Body for approve-user / reject-user: exactly one of user_id or request_id."""

    user_id: Optional[int] = None
    request_id: Optional[int] = None

    @model_validator(mode="after")
    def exactly_one(self) -> "UserOrRequestTarget":
        if (self.user_id is None) == (self.request_id is None):
            raise ValueError("provide exactly one of user_id or request_id")
        return self


class SuspendUserRequest(BaseModel):
    user_id: int
    suspended: bool = True


class AccessRequestResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    full_name: Optional[str]
    role: str
    organization_id: Optional[int]
    status: str
    created_at: str
    updated_at: str

    @classmethod
    def from_domain(cls, req: AccessRequest) -> "AccessRequestResponse":
        return cls(
            id=req.id,
            email=req.email,
            full_name=req.full_name,
            role=req.role,
            organization_id=req.organization_id,
            status=req.status,
            created_at=req.created_at or "",
            updated_at=req.updated_at or "",
        )


class ApprovalResult(BaseModel):
    """Response for approve-user: the resulting account and, if any, the request it came from."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    request_id: Optional[int] = None


class SyncProfilesResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    orphaned: list[AccessRequestResponse]
    created: list[int] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class ApproveEmailAccessRequest(BaseModel):
    notification_id: int


class ApproveEmailAccessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    created: list[int]
    errors: list[str]


class UserEmailsRequest(BaseModel):
    user_ids: list[int] = Field(min_length=1, max_length=200)


class OrganizationNotesRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    organization_id: int
    notes: str = Field(max_length=5000)


class AppSettingsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    self_registration_enabled: bool
    organization_signup_enabled: bool


class AppSettingsPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    self_registration_enabled: Optional[bool] = None
    organization_signup_enabled: Optional[bool] = None
