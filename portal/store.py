"""
portal/store.py -- SQLAlchemy-backed persistence layer for the VAPT portal.

Uses SQLAlchemy Core (not ORM) so the domain dataclasses in portal/models.py
remain the authoritative domain representation. Swapping SQLite for
PostgreSQL is a connection string change, not a rewrite.

Pattern: Repository + Data Mapper. PortalStore is the repository (one clean
interface per entity). The _row_to_* functions are the mappers. Route
handlers and the workflow never touch SQL directly.

Concurrency: every status transition goes through apply_transition() (or
request_verification()), which issues guarded UPDATEs -- the WHERE clause
repeats the state the caller observed. If another request changed the row in
between, the guard matches zero rows, the transaction is rolled back, and the
caller gets False. The row update, its activity entry and its notifications
therefore commit together or not at all.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = PortalStore()                               # SQLite default
    store = PortalStore("postgresql://user:pw@host/db") # PostgreSQL
    org_id = store.create_organization(org)
    vuln_id = store.create_vulnerability(vuln)
    store.apply_transition([RowUpdate("vulnerabilities", vuln_id,
                                      expected={"status": "pending"},
                                      values={"status": "approved"})])
    store.close()
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from portal.models import (
    ActivityLog,
    Notification,
    Organization,
    SecurityTeamAssignment,
    Verification,
    Vulnerability,
)

logger = logging.getLogger("vaptportal.portal")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'vaptportal.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_organizations = Table(
    "organizations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("contact_email", String(255), nullable=False),
    Column("contact_phone", String(50)),
    Column("address", Text),
    Column("services", Text),  # JSON object serialized as text
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("notes", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_vulnerabilities = Table(
    "vulnerabilities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, nullable=False, index=True),
    Column("submitted_by", Integer, nullable=False),
    Column("title", String(255), nullable=False),
    Column("description", Text, nullable=False),
    Column("severity", String(20), nullable=False),
    Column("cvss_score", Float),
    Column("affected_systems", Text),
    Column("remediation", Text),
    Column("service_type", String(20)),
    Column("poc", Text),
    Column("instances", Text),  # JSON array
    Column("cwe_id", String(20)),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("admin_comments", Text),
    Column("approved_by", Integer),
    Column("approved_at", String(32)),
    Column("assigned_to_client", Integer),
    Column("client_status", String(20)),
    Column("client_deadline", String(32)),
    Column("client_comments", Text),
    Column("client_updated_at", String(32)),
    Column("verification_status", String(30), nullable=False, server_default="not_submitted"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_verifications = Table(
    "verifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("vulnerability_id", Integer, nullable=False, index=True),
    Column("submitted_by_client", Integer, nullable=False),
    Column("assigned_to_security_team", Integer),
    Column("verification_status", String(20), nullable=False, server_default="pending"),
    Column("admin_comments", Text),
    Column("security_team_comments", Text),
    Column("verification_deadline", String(32)),
    Column("assigned_at", String(32)),
    Column("verified_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("type", String(50), nullable=False),
    Column("user_id", Integer, index=True),  # NULL = broadcast to admins
    Column("actor_id", Integer),
    Column("organization_id", Integer, index=True),
    Column("payload", Text),  # JSON object
    Column("read", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_assignments = Table(
    "security_team_organizations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("security_team_user_id", Integer, nullable=False),
    Column("organization_id", Integer, nullable=False),
    Column("services", Text),  # JSON array of service keys
    Column("deadline", String(32)),
    Column("assigned_by", Integer),
    Column("assigned_at", String(32), nullable=False),
    UniqueConstraint("security_team_user_id", "organization_id", name="uq_member_org"),
)

_activity = Table(
    "activity_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", Integer),
    Column("action", String(50), nullable=False),
    Column("entity_type", String(30), nullable=False),
    Column("entity_id", Integer),
    Column("organization_id", Integer, index=True),
    Column("detail", Text),  # JSON object
    Column("created_at", String(32), nullable=False),
)

# Tables reachable through RowUpdate / status_counts. Names come from code,
# never from request input.
_TABLES: dict[str, Table] = {
    "organizations": _organizations,
    "vulnerabilities": _vulnerabilities,
    "verifications": _verifications,
}

# Columns serialized as JSON text, per table.
_JSON_COLUMNS: dict[str, set] = {
    "organizations": {"services"},
    "vulnerabilities": {"instances"},
    "verifications": set(),
}


# ---------------------------------------------------------------------------
# Transition primitives
# ---------------------------------------------------------------------------


@dataclass
class RowUpdate:
    """One guarded UPDATE inside a transition.

    expected: column -> value the row must still hold. A list or tuple value
              means "any of these"; None means IS NULL.
    values:   column -> new value. updated_at is stamped automatically on
              tables that have it.
    """

    table: str
    id: int
    expected: dict = field(default_factory=dict)
    values: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: str) -> Optional[datetime]:
    """Parse an ISO 8601 string into an aware UTC datetime, or None if malformed.

    Naive values (e.g. plain dates from a form) are treated as UTC.
    """
    try:
        dt = datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _days_overdue(deadline_iso: str) -> int:
    """Return how many days overdue the deadline is (positive = overdue, negative = future).

    Returns an int (truncated day delta) so callers get consistent integer
    comparisons. A malformed deadline counts as zero days overdue.
    """
    dt = _parse_iso(deadline_iso)
    if dt is None:
        return 0
    return int((datetime.now(timezone.utc) - dt).total_seconds() / 86400)


def _load_json(raw: Optional[str], default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Discarding malformed JSON column value")
        return default


def _encode(table_name: str, values: dict) -> dict:
    """Serialize JSON columns and stamp updated_at where the table has one."""
    out = dict(values)
    for col in _JSON_COLUMNS.get(table_name, set()):
        if col in out:
            out[col] = json.dumps(out[col])
    if "updated_at" in _TABLES[table_name].c:
        out["updated_at"] = _now_iso()
    return out


def _filter_clauses(table: Table, filters: dict) -> list:
    """Build WHERE clauses from keyword filters. None values are skipped."""
    clauses = []
    for col, value in filters.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set, frozenset)):
            clauses.append(table.c[col].in_(list(value)))
        else:
            clauses.append(table.c[col] == value)
    return clauses


def _guard_clauses(table: Table, expected: dict) -> list:
    """Build WHERE clauses for a RowUpdate guard. None means IS NULL."""
    clauses = []
    for col, value in expected.items():
        if value is None:
            clauses.append(table.c[col].is_(None))
        elif isinstance(value, (list, tuple, set, frozenset)):
            clauses.append(table.c[col].in_(list(value)))
        else:
            clauses.append(table.c[col] == value)
    return clauses


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PortalStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # Route handlers run in FastAPI's thread pool, so one connection
            # may be touched from several threads.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def create_organization(self, org: Organization) -> int:
        """Insert a new organization and return its assigned database ID."""
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _organizations.insert().values(
                    name=org.name,
                    contact_email=org.contact_email,
                    contact_phone=org.contact_phone,
                    address=org.address,
                    services=json.dumps(org.services),
                    status=org.status,
                    notes=org.notes,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_organization(self, org_id: int) -> Optional[Organization]:
        with self.engine.connect() as conn:
            row = conn.execute(_organizations.select().where(_organizations.c.id == org_id)).fetchone()
        return _row_to_organization(row) if row is not None else None

    def list_organizations(self, status: Optional[str] = None, ids: Optional[Iterable[int]] = None) -> list[Organization]:
        """Return organizations, newest first. ids=[] yields an empty list."""
        if ids is not None:
            ids = list(ids)
            if not ids:
                return []
        query = _organizations.select().where(*_filter_clauses(_organizations, {"status": status, "id": ids}))
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_organizations.c.created_at.desc(), _organizations.c.id.desc())).fetchall()
        return [_row_to_organization(r) for r in rows]

    def update_organization(self, org_id: int, **fields) -> bool:
        """Update mutable fields on an organization.

        Accepts any subset of: name, contact_email, contact_phone, address,
        services, status, notes. services must be passed as a dict.

        Returns True if a row was updated, False if org_id was not found.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _organizations.update()
                .where(_organizations.c.id == org_id)
                .values(**_encode("organizations", fields))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Vulnerabilities
    # ------------------------------------------------------------------

    def create_vulnerability(
        self,
        vuln: Vulnerability,
        activity: Optional[ActivityLog] = None,
        notifications: Iterable[Notification] = (),
    ) -> int:
        """Insert a new vulnerability and return its ID.

        The optional activity entry and notifications are written in the same
        transaction, with the new ID filled into activity.entity_id and each
        payload's vulnerability_id.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_vulnerabilities.insert().values(**_vulnerability_values(vuln, now)))
            vuln_id = result.inserted_primary_key[0]
            if activity is not None:
                if activity.entity_id is None:
                    activity.entity_id = vuln_id
                conn.execute(_activity.insert().values(**_activity_values(activity)))
            for n in notifications:
                n.payload.setdefault("vulnerability_id", vuln_id)
                conn.execute(_notifications.insert().values(**_notification_values(n)))
            conn.commit()
            return vuln_id

    def get_vulnerability(self, vuln_id: int) -> Optional[Vulnerability]:
        with self.engine.connect() as conn:
            row = conn.execute(_vulnerabilities.select().where(_vulnerabilities.c.id == vuln_id)).fetchone()
        return _row_to_vulnerability(row) if row is not None else None

    def list_vulnerabilities(
        self,
        organization_id: Optional[int] = None,
        organization_ids: Optional[Iterable[int]] = None,
        submitted_by: Optional[int] = None,
        assigned_to_client: Optional[int] = None,
        status: Optional[str] = None,
        client_status: Optional[str] = None,
        verification_status: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> list[Vulnerability]:
        """Return vulnerabilities matching every given filter, newest first.

        organization_ids restricts to a set of organizations (used for
        security-team scoping); an empty collection yields an empty list.
        """
        if organization_ids is not None:
            organization_ids = list(organization_ids)
            if not organization_ids:
                return []
        clauses = _filter_clauses(
            _vulnerabilities,
            {
                "organization_id": organization_id,
                "submitted_by": submitted_by,
                "assigned_to_client": assigned_to_client,
                "status": status,
                "client_status": client_status,
                "verification_status": verification_status,
                "severity": severity,
            },
        )
        if organization_ids is not None:
            clauses.append(_vulnerabilities.c.organization_id.in_(organization_ids))
        query = _vulnerabilities.select().where(*clauses)
        with self.engine.connect() as conn:
            rows = conn.execute(
                query.order_by(_vulnerabilities.c.created_at.desc(), _vulnerabilities.c.id.desc())
            ).fetchall()
        return [_row_to_vulnerability(r) for r in rows]

    # ------------------------------------------------------------------
    # Verifications
    # ------------------------------------------------------------------

    def get_verification(self, verification_id: int) -> Optional[Verification]:
        with self.engine.connect() as conn:
            row = conn.execute(_verifications.select().where(_verifications.c.id == verification_id)).fetchone()
        return _row_to_verification(row) if row is not None else None

    def list_verifications(
        self,
        status: Optional[str] = None,
        assigned_to_security_team: Optional[int] = None,
        submitted_by_client: Optional[int] = None,
        vulnerability_id: Optional[int] = None,
    ) -> list[Verification]:
        """Return verifications matching every given filter, newest first."""
        query = _verifications.select().where(
            *_filter_clauses(
                _verifications,
                {
                    "verification_status": status,
                    "assigned_to_security_team": assigned_to_security_team,
                    "submitted_by_client": submitted_by_client,
                    "vulnerability_id": vulnerability_id,
                },
            )
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_verifications.c.created_at.desc(), _verifications.c.id.desc())).fetchall()
        return [_row_to_verification(r) for r in rows]

    def request_verification(
        self,
        verification: Verification,
        expected: dict,
        activity: Optional[ActivityLog] = None,
        notifications: Iterable[Notification] = (),
    ) -> Optional[int]:
        """Open a verification and flag its vulnerability, in one transaction.

        The vulnerability is moved to pending_verification only while it still
        matches ``expected``. The new verification ID is filled into the
        activity entry (entity_id) and each notification payload
        (verification_id) before they are written.

        Returns the verification ID, or None if the guard failed.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            guarded = conn.execute(
                _vulnerabilities.update()
                .where(
                    _vulnerabilities.c.id == verification.vulnerability_id,
                    *_guard_clauses(_vulnerabilities, expected),
                )
                .values(verification_status="pending_verification", updated_at=now)
            )
            if guarded.rowcount == 0:
                conn.rollback()
                return None
            result = conn.execute(
                _verifications.insert().values(
                    vulnerability_id=verification.vulnerability_id,
                    submitted_by_client=verification.submitted_by_client,
                    assigned_to_security_team=verification.assigned_to_security_team,
                    verification_status=verification.verification_status,
                    admin_comments=verification.admin_comments,
                    security_team_comments=verification.security_team_comments,
                    verification_deadline=verification.verification_deadline,
                    created_at=now,
                )
            )
            verification_id = result.inserted_primary_key[0]
            if activity is not None:
                if activity.entity_id is None:
                    activity.entity_id = verification_id
                conn.execute(_activity.insert().values(**_activity_values(activity)))
            for n in notifications:
                n.payload.setdefault("verification_id", verification_id)
                conn.execute(_notifications.insert().values(**_notification_values(n)))
            conn.commit()
        return verification_id

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def apply_transition(
        self,
        updates: Iterable[RowUpdate],
        activity: Optional[ActivityLog] = None,
        notifications: Iterable[Notification] = (),
    ) -> bool:
        """Apply guarded row updates plus their audit entry and notifications atomically.

        Returns False (and writes nothing) if any update's guard matched no
        row -- either the row is gone or its state changed since the caller
        read it.
        """
        with self.engine.connect() as conn:
            for upd in updates:
                table = _TABLES[upd.table]
                result = conn.execute(
                    table.update()
                    .where(table.c.id == upd.id, *_guard_clauses(table, upd.expected))
                    .values(**_encode(upd.table, upd.values))
                )
                if result.rowcount == 0:
                    conn.rollback()
                    logger.warning("Transition guard failed on %s id=%s; rolled back", upd.table, upd.id)
                    return False
            if activity is not None:
                conn.execute(_activity.insert().values(**_activity_values(activity)))
            for n in notifications:
                conn.execute(_notifications.insert().values(**_notification_values(n)))
            conn.commit()
        return True

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def create_notification(self, notification: Notification) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_notifications.insert().values(**_notification_values(notification)))
            conn.commit()
            return result.inserted_primary_key[0]

    def get_notification(self, notification_id: int) -> Optional[Notification]:
        with self.engine.connect() as conn:
            row = conn.execute(_notifications.select().where(_notifications.c.id == notification_id)).fetchone()
        return _row_to_notification(row) if row is not None else None

    def list_notifications_for_user(
        self,
        user_id: int,
        include_broadcast: bool = False,
        unread_only: bool = False,
        limit: Optional[int] = None,
    ) -> list[Notification]:
        """Return a user's inbox, newest first.

        include_broadcast adds admin broadcasts (user_id NULL); the caller
        passes True only for admins.
        """
        query = _notifications.select().where(_inbox_clause(user_id, include_broadcast))
        if unread_only:
            query = query.where(_notifications.c.read == 0)
        query = query.order_by(_notifications.c.created_at.desc(), _notifications.c.id.desc())
        if limit is not None:
            query = query.limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_notification(r) for r in rows]

    def mark_notification_read(self, notification_id: int, user_id: int, include_broadcast: bool = False) -> bool:
        """Mark one notification read if it belongs to the reader's inbox.

        The ownership check is part of the UPDATE's WHERE clause, so a user
        cannot mark someone else's notification even by guessing its ID.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _notifications.update()
                .where((_notifications.c.id == notification_id) & _inbox_clause(user_id, include_broadcast))
                .values(read=1)
            )
            conn.commit()
        return result.rowcount > 0

    def mark_all_read(self, user_id: int, include_broadcast: bool = False) -> int:
        """Mark every unread notification in the reader's inbox read. Returns the count."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _notifications.update()
                .where(_inbox_clause(user_id, include_broadcast) & (_notifications.c.read == 0))
                .values(read=1)
            )
            conn.commit()
        return result.rowcount

    def list_notifications_for_organization(self, org_id: int, limit: int = 10) -> list[Notification]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _notifications.select()
                .where(_notifications.c.organization_id == org_id)
                .order_by(_notifications.c.created_at.desc(), _notifications.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_notification(r) for r in rows]

    # ------------------------------------------------------------------
    # Security-team assignments
    # ------------------------------------------------------------------

    def create_assignment(
        self,
        assignment: SecurityTeamAssignment,
        activity: Optional[ActivityLog] = None,
        notifications: Iterable[Notification] = (),
    ) -> int:
        """Assign a security-team member to an organization.

        The optional activity entry and notifications commit with the insert;
        each notification payload gets the new assignment_id.

        Raises sqlalchemy.exc.IntegrityError if the (member, organization)
        pair already exists -- the route translates that into a 409.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _assignments.insert().values(
                    security_team_user_id=assignment.security_team_user_id,
                    organization_id=assignment.organization_id,
                    services=json.dumps(assignment.services),
                    deadline=assignment.deadline,
                    assigned_by=assignment.assigned_by,
                    assigned_at=_now_iso(),
                )
            )
            assignment_id = result.inserted_primary_key[0]
            if activity is not None:
                conn.execute(_activity.insert().values(**_activity_values(activity)))
            for n in notifications:
                n.payload.setdefault("assignment_id", assignment_id)
                conn.execute(_notifications.insert().values(**_notification_values(n)))
            conn.commit()
            return assignment_id

    def get_assignment(self, assignment_id: int) -> Optional[SecurityTeamAssignment]:
        with self.engine.connect() as conn:
            row = conn.execute(_assignments.select().where(_assignments.c.id == assignment_id)).fetchone()
        return _row_to_assignment(row) if row is not None else None

    def list_assignments(
        self,
        security_team_user_id: Optional[int] = None,
        organization_id: Optional[int] = None,
    ) -> list[SecurityTeamAssignment]:
        query = _assignments.select().where(
            *_filter_clauses(
                _assignments,
                {"security_team_user_id": security_team_user_id, "organization_id": organization_id},
            )
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_assignments.c.assigned_at.desc())).fetchall()
        return [_row_to_assignment(r) for r in rows]

    def delete_assignment(self, assignment_id: int, activity: Optional[ActivityLog] = None) -> bool:
        """Remove an assignment. The activity entry is written only if a row was deleted."""
        with self.engine.connect() as conn:
            result = conn.execute(_assignments.delete().where(_assignments.c.id == assignment_id))
            if result.rowcount == 0:
                return False
            if activity is not None:
                conn.execute(_activity.insert().values(**_activity_values(activity)))
            conn.commit()
        return True

    def is_assigned(self, user_id: int, org_id: int) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_assignments.c.id).where(
                    (_assignments.c.security_team_user_id == user_id) & (_assignments.c.organization_id == org_id)
                )
            ).fetchone()
        return row is not None

    def assignment_counts(self) -> dict[int, int]:
        """Return {security_team_user_id: number of organizations assigned}."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_assignments.c.security_team_user_id, func.count().label("n")).group_by(
                    _assignments.c.security_team_user_id
                )
            ).fetchall()
        return {row.security_team_user_id: row.n for row in rows}

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def log_activity(self, entry: ActivityLog) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_activity.insert().values(**_activity_values(entry)))
            conn.commit()
            return result.inserted_primary_key[0]

    def list_activity(self, organization_id: Optional[int] = None, limit: int = 10) -> list[ActivityLog]:
        """Return the newest activity entries, optionally for one organization."""
        query = _activity.select().where(*_filter_clauses(_activity, {"organization_id": organization_id}))
        with self.engine.connect() as conn:
            rows = conn.execute(
                query.order_by(_activity.c.created_at.desc(), _activity.c.id.desc()).limit(limit)
            ).fetchall()
        return [_row_to_activity(r) for r in rows]

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def status_counts(
        self,
        table: str,
        column: str,
        member_scope: Optional[tuple[Iterable[int], int]] = None,
        **filters,
    ) -> dict[str, int]:
        """Return {value: row count} for one column of a table in a single GROUP BY.

        filters follow list_* semantics: None is ignored, a list means IN.
        member_scope=(organization_ids, user_id) keeps rows in those
        organizations or submitted by that user.
        Values with zero rows are absent -- callers use .get(value, 0).
        """
        tbl = _TABLES[table]
        col = tbl.c[column]
        clauses = _filter_clauses(tbl, filters)
        if member_scope is not None:
            org_ids, user_id = member_scope
            clauses.append(or_(tbl.c.organization_id.in_(list(org_ids)), tbl.c.submitted_by == user_id))
        stmt = select(col, func.count().label("n")).where(*clauses).group_by(col)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return {row[0]: row.n for row in rows if row[0] is not None}

    def get_deadlines(self, user_id: int, approaching_days: int = 7) -> dict[str, list[dict]]:
        """Return a security-team member's project and verification deadlines.

        Two sources: assignment deadlines (one per organization) and the
        deadlines of verifications assigned to the member that are still
        pending or assigned.

        Uses Python date arithmetic (not SQL date functions) for portability.

        Returns:
            {
              "overdue":     [...],  oldest deadline first (worst first)
              "approaching": [...],  due within approaching_days, soonest first
              "upcoming":    [...],  due later, soonest first
            }
            Each item: {"kind", "id", "organization_id", "organization_name",
                        "vulnerability_id", "title", "deadline"} plus
                        "days_overdue" or "days_until_due".
        """
        items: list[dict] = []
        with self.engine.connect() as conn:
            assignment_rows = conn.execute(
                select(
                    _assignments.c.id,
                    _assignments.c.organization_id,
                    _assignments.c.deadline,
                    _organizations.c.name.label("organization_name"),
                )
                .select_from(_assignments.join(_organizations, _assignments.c.organization_id == _organizations.c.id))
                .where((_assignments.c.security_team_user_id == user_id) & _assignments.c.deadline.isnot(None))
            ).fetchall()
            verification_rows = conn.execute(
                select(
                    _verifications.c.id,
                    _verifications.c.vulnerability_id,
                    _verifications.c.verification_deadline.label("deadline"),
                    _vulnerabilities.c.title,
                    _vulnerabilities.c.organization_id,
                    _organizations.c.name.label("organization_name"),
                )
                .select_from(
                    _verifications.join(
                        _vulnerabilities, _verifications.c.vulnerability_id == _vulnerabilities.c.id
                    ).join(_organizations, _vulnerabilities.c.organization_id == _organizations.c.id)
                )
                .where(
                    (_verifications.c.assigned_to_security_team == user_id)
                    & _verifications.c.verification_status.in_(["pending", "assigned"])
                    & _verifications.c.verification_deadline.isnot(None)
                )
            ).fetchall()

        for row in assignment_rows:
            items.append(
                {
                    "kind": "organization",
                    "id": row.id,
                    "organization_id": row.organization_id,
                    "organization_name": row.organization_name,
                    "vulnerability_id": None,
                    "title": f"{row.organization_name} assessment",
                    "deadline": row.deadline,
                }
            )
        for row in verification_rows:
            items.append(
                {
                    "kind": "verification",
                    "id": row.id,
                    "organization_id": row.organization_id,
                    "organization_name": row.organization_name,
                    "vulnerability_id": row.vulnerability_id,
                    "title": row.title,
                    "deadline": row.deadline,
                }
            )

        overdue: list[tuple[datetime, dict]] = []
        approaching: list[tuple[datetime, dict]] = []
        upcoming: list[tuple[datetime, dict]] = []
        now = datetime.now(timezone.utc)

        for item in items:
            dt = _parse_iso(item["deadline"])
            if dt is None:
                continue
            item["deadline"] = dt.isoformat()
            delta_seconds = (now - dt).total_seconds()  # positive if past deadline
            if delta_seconds >= 0:
                item["days_overdue"] = _days_overdue(item["deadline"])
                overdue.append((dt, item))
            else:
                item["days_until_due"] = int(-delta_seconds / 86400)
                if delta_seconds > -(approaching_days * 86400):
                    approaching.append((dt, item))
                else:
                    upcoming.append((dt, item))

        # Compare parsed instants; stored strings may carry different offsets.
        return {
            name: [item for _, item in sorted(bucket, key=lambda pair: pair[0])]
            for name, bucket in (("overdue", overdue), ("approaching", approaching), ("upcoming", upcoming))
        }

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _inbox_clause(user_id: int, include_broadcast: bool):
    if include_broadcast:
        return or_(_notifications.c.user_id == user_id, _notifications.c.user_id.is_(None))
    return _notifications.c.user_id == user_id


def _vulnerability_values(vuln: Vulnerability, now: str) -> dict[str, Any]:
    return {
        "organization_id": vuln.organization_id,
        "submitted_by": vuln.submitted_by,
        "title": vuln.title,
        "description": vuln.description,
        "severity": vuln.severity,
        "cvss_score": vuln.cvss_score,
        "affected_systems": vuln.affected_systems,
        "remediation": vuln.remediation,
        "service_type": vuln.service_type,
        "poc": vuln.poc,
        "instances": json.dumps(vuln.instances),
        "cwe_id": vuln.cwe_id,
        "status": vuln.status,
        "admin_comments": vuln.admin_comments,
        "approved_by": vuln.approved_by,
        "approved_at": vuln.approved_at,
        "assigned_to_client": vuln.assigned_to_client,
        "client_status": vuln.client_status,
        "client_deadline": vuln.client_deadline,
        "client_comments": vuln.client_comments,
        "client_updated_at": vuln.client_updated_at,
        "verification_status": vuln.verification_status,
        "created_at": now,
        "updated_at": now,
    }


def _notification_values(n: Notification) -> dict[str, Any]:
    org_id = n.organization_id if n.organization_id is not None else n.payload.get("organization_id")
    return {
        "type": n.type,
        "user_id": n.user_id,
        "actor_id": n.actor_id,
        "organization_id": org_id,
        "payload": json.dumps(n.payload),
        "read": 1 if n.read else 0,
        "created_at": _now_iso(),
    }


def _activity_values(entry: ActivityLog) -> dict[str, Any]:
    return {
        "actor_id": entry.actor_id,
        "action": entry.action,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "organization_id": entry.organization_id,
        "detail": json.dumps(entry.detail),
        "created_at": _now_iso(),
    }


def _row_to_organization(row) -> Organization:
    return Organization(
        id=row.id,
        name=row.name,
        contact_email=row.contact_email,
        contact_phone=row.contact_phone,
        address=row.address,
        services=_load_json(row.services, {}),
        status=row.status,
        notes=row.notes,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_vulnerability(row) -> Vulnerability:
    return Vulnerability(
        id=row.id,
        organization_id=row.organization_id,
        submitted_by=row.submitted_by,
        title=row.title,
        description=row.description,
        severity=row.severity,
        cvss_score=row.cvss_score,
        affected_systems=row.affected_systems,
        remediation=row.remediation,
        service_type=row.service_type,
        poc=row.poc,
        instances=_load_json(row.instances, []),
        cwe_id=row.cwe_id,
        status=row.status,
        admin_comments=row.admin_comments,
        approved_by=row.approved_by,
        approved_at=row.approved_at,
        assigned_to_client=row.assigned_to_client,
        client_status=row.client_status,
        client_deadline=row.client_deadline,
        client_comments=row.client_comments,
        client_updated_at=row.client_updated_at,
        verification_status=row.verification_status,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_verification(row) -> Verification:
    return Verification(
        id=row.id,
        vulnerability_id=row.vulnerability_id,
        submitted_by_client=row.submitted_by_client,
        assigned_to_security_team=row.assigned_to_security_team,
        verification_status=row.verification_status,
        admin_comments=row.admin_comments,
        security_team_comments=row.security_team_comments,
        verification_deadline=row.verification_deadline,
        assigned_at=row.assigned_at,
        verified_at=row.verified_at,
        created_at=row.created_at,
    )


def _row_to_notification(row) -> Notification:
    return Notification(
        id=row.id,
        type=row.type,
        user_id=row.user_id,
        actor_id=row.actor_id,
        organization_id=row.organization_id,
        payload=_load_json(row.payload, {}),
        read=bool(row.read),
        created_at=row.created_at,
    )


def _row_to_assignment(row) -> SecurityTeamAssignment:
    return SecurityTeamAssignment(
        id=row.id,
        security_team_user_id=row.security_team_user_id,
        organization_id=row.organization_id,
        services=_load_json(row.services, []),
        deadline=row.deadline,
        assigned_by=row.assigned_by,
        assigned_at=row.assigned_at,
    )


def _row_to_activity(row) -> ActivityLog:
    return ActivityLog(
        id=row.id,
        actor_id=row.actor_id,
        action=row.action,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        organization_id=row.organization_id,
        detail=_load_json(row.detail, {}),
        created_at=row.created_at,
    )
