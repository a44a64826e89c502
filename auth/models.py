"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in portal/models.py -- dataclasses own domain shape; stores and routes do the
work.

Layer rule: no imports from api/ or portal/.
"""

from __future__ import annotations

from dataclasses import dataclass

SUPER_ADMIN = "Super-admin"
ADMIN = "Admin"
SECURITY_TEAM = "Security-team"
CLIENT = "Client"

ADMIN_ROLES = frozenset({SUPER_ADMIN, ADMIN})

# Approval status shared by users and access requests.
PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"


@dataclass
class User:
    """An account in the portal; doubles as the user's profile.

    email is the login name. hashed_password is None only for rows created
    without a password (never for accounts that can log in).

    status is the approval state set by an admin. suspended is orthogonal: an
    approved user can be suspended and later unsuspended without re-approval.
    organization_id is set for Client users and None for staff.
    """

    email: str
    role: str  # "Super-admin" | "Admin" | "Security-team" | "Client"
    id: int | None = None
    full_name: str | None = None
    hashed_password: str | None = None
    status: str = PENDING  # "pending" | "approved" | "rejected"
    suspended: bool = False
    organization_id: int | None = None
    designation: str | None = None
    created_at: str | None = None
    last_login: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def can_login(self) -> bool:
        return self.status == APPROVED and not self.suspended


@dataclass
class AccessRequest:
    """A pending request to create a client account for an organization.

    Produced by organization signup: one request per listed user. The
    requester chooses one shared password; only its bcrypt hash is stored.
    Approving the request creates the User and flips status to "approved" in
    the same transaction.
    """

    email: str
    organization_id: int | None
    id: int | None = None
    full_name: str | None = None
    role: str = CLIENT
    status: str = PENDING
    hashed_password: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
