"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper (same as portal/store.py).
UserStore is the repository; _row_to_user / _row_to_access_request are the
mappers. Route and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL values.
  Emails are normalized (stripped, lower-cased) on every write and lookup, so
  the UNIQUE constraint on users.email is case-insensitive in practice.

DB path: auth/vaptportal_auth.db (sibling to portal/vaptportal.db).

Layer rule: no imports from api/ or portal/.

app_settings table: single-row settings table (id=1 enforced by CHECK
constraint). The seed INSERT is guarded by NOT EXISTS so it runs once on any
backend.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, or_, select, text
from sqlalchemy.engine import Engine

from auth.models import APPROVED, PENDING, REJECTED, SUPER_ADMIN, AccessRequest, User

logger = logging.getLogger("vaptportal.auth")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'vaptportal_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("full_name", String(255)),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default="Client"),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("suspended", Integer, nullable=False, server_default="0"),
    Column("organization_id", Integer),  # portal DB id; no cross-DB FK
    Column("designation", String(255)),
    Column("created_at", String(32), nullable=False),
    Column("last_login", Text),
)

_access_requests = Table(
    "access_requests",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("full_name", String(255)),
    Column("role", String(30), nullable=False, server_default="Client"),
    Column("organization_id", Integer),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("hashed_password", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


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
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and AccessRequest entities.

    Usage:
        store = UserStore()
        store.create_user(User(email="root@example.com", role="Super-admin",
                               status="approved", hashed_password=hash_password("secret")))
        user = store.get_by_email("root@example.com")
        store.close()
    """

    # Known keys for app_settings -- validated before any SQL write to prevent
    # injection via dynamic column names. Only these keys are accepted.
    _APP_SETTINGS_KEYS: set = {"self_registration_enabled", "organization_signup_enabled"}

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._ensure_app_settings()

    def _ensure_app_settings(self) -> None:
        """Create the app_settings table and seed the single-row record if not present."""
        with self.engine.connect() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS app_settings (
                        id INTEGER PRIMARY KEY CHECK (id = 1),
                        self_registration_enabled INTEGER DEFAULT 1,
                        organization_signup_enabled INTEGER DEFAULT 1
                    )
                    """
                )
            )
            conn.execute(
                text(
                    "INSERT INTO app_settings (id) "
                    "SELECT 1 WHERE NOT EXISTS (SELECT 1 FROM app_settings WHERE id = 1)"
                )
            )
            conn.commit()

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists.

        Used by the setup middleware and POST /setup to detect first-run state.
        """
        with self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM users")).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers (e.g. POST /setup, POST /auth/signup) translate that into a
        409 response.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_users.insert().values(**_user_values(user)))
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(
        self,
        role: str | None = None,
        status: str | None = None,
        organization_id: int | None = None,
        suspended: bool | None = None,
        search: str | None = None,
    ) -> list[User]:
        """Return users matching every given filter, newest first.

        search matches a substring of email or full_name (case-insensitive).
        """
        query = _users.select()
        if role is not None:
            query = query.where(_users.c.role == role)
        if status is not None:
            query = query.where(_users.c.status == status)
        if organization_id is not None:
            query = query.where(_users.c.organization_id == organization_id)
        if suspended is not None:
            query = query.where(_users.c.suspended == (1 if suspended else 0))
        if search:
            pattern = f"%{search.strip()}%"
            query = query.where(or_(_users.c.email.ilike(pattern), _users.c.full_name.ilike(pattern)))
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_users.c.created_at.desc(), _users.c.id.desc())).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: full_name, role, status, suspended, organization_id,
        designation, hashed_password. suspended must be passed as bool; this
        method converts to int for SQLite.

        Returns True if a row was updated, False if user_id was not found.
        """
        if "suspended" in fields:
            fields["suspended"] = 1 if fields["suspended"] else 0
        if not fields:
            return self.get_by_id(user_id) is not None
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user record. Returns True if deleted, False if not found."""
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    def count_active_super_admins(self) -> int:
        """Return the number of approved, unsuspended Super-admin accounts.

        Used by POST /admin/suspend-user and PATCH /admin/users/{id} to keep at
        least one Super-admin able to log in.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.role == SUPER_ADMIN) & (_users.c.status == APPROVED) & (_users.c.suspended == 0))
            ).scalar()
        return result or 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    def get_emails(self, user_ids: list[int]) -> dict[int, str]:
        """Return {user_id: email} for the given IDs. Unknown IDs are omitted."""
        if not user_ids:
            return {}
        with self.engine.connect() as conn:
            rows = conn.execute(select(_users.c.id, _users.c.email).where(_users.c.id.in_(user_ids))).fetchall()
        return {row.id: row.email for row in rows}

    # ------------------------------------------------------------------
    # Access requests
    # ------------------------------------------------------------------

    def create_access_request(self, req: AccessRequest) -> int:
        """Insert a pending access request and return its ID."""
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _access_requests.insert().values(
                    email=normalize_email(req.email),
                    full_name=req.full_name,
                    role=req.role,
                    organization_id=req.organization_id,
                    status=req.status,
                    hashed_password=req.hashed_password,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_access_request(self, request_id: int) -> AccessRequest | None:
        with self.engine.connect() as conn:
            row = conn.execute(_access_requests.select().where(_access_requests.c.id == request_id)).fetchone()
        return _row_to_access_request(row) if row is not None else None

    def list_access_requests(
        self,
        status: str | None = None,
        organization_id: int | None = None,
        email: str | None = None,
    ) -> list[AccessRequest]:
        query = _access_requests.select()
        if email is not None:
            query = query.where(_access_requests.c.email == normalize_email(email))
        if status is not None:
            query = query.where(_access_requests.c.status == status)
        if organization_id is not None:
            query = query.where(_access_requests.c.organization_id == organization_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_access_requests.c.created_at.desc())).fetchall()
        return [_row_to_access_request(r) for r in rows]

    def approve_access_request(self, request_id: int) -> int | None:
        """Create the approved account for a pending request, in one transaction.

        The request row is flipped to "approved" only while it is still
        pending, so two concurrent approvals cannot both create an account.

        Returns the new user ID, or None if the request does not exist or is no
        longer pending. Raises sqlalchemy.exc.IntegrityError (and writes
        nothing) if an account with the request's email already exists.
        """
        with self.engine.connect() as conn:
            row = conn.execute(_access_requests.select().where(_access_requests.c.id == request_id)).fetchone()
            if row is None:
                return None
            flipped = conn.execute(
                _access_requests.update()
                .where((_access_requests.c.id == request_id) & (_access_requests.c.status == PENDING))
                .values(status=APPROVED, updated_at=_now_iso())
            )
            if flipped.rowcount == 0:
                conn.rollback()
                return None
            user = _user_from_request(_row_to_access_request(row))
            result = conn.execute(_users.insert().values(**_user_values(user)))
            conn.commit()
            return result.inserted_primary_key[0]

    def reject_access_request(self, request_id: int) -> bool:
        """Mark a pending request rejected. Returns False if it was not pending."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _access_requests.update()
                .where((_access_requests.c.id == request_id) & (_access_requests.c.status == PENDING))
                .values(status=REJECTED, updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def find_orphaned_approvals(self) -> list[AccessRequest]:
        """Return approved access requests that have no matching user account.

        These arise when a request was marked approved by hand or when account
        creation failed after the fact. POST /admin/sync-profiles repairs them
        with create_user_for_request().
        """
        existing = select(_users.c.email)
        with self.engine.connect() as conn:
            rows = conn.execute(
                _access_requests.select()
                .where((_access_requests.c.status == APPROVED) & (_access_requests.c.email.not_in(existing)))
                .order_by(_access_requests.c.id)
            ).fetchall()
        return [_row_to_access_request(r) for r in rows]

    def create_user_for_request(self, req: AccessRequest) -> int:
        """Create the approved account for an already-approved request."""
        return self.create_user(_user_from_request(req))

    # ------------------------------------------------------------------
    # App settings
    # ------------------------------------------------------------------

    def get_app_settings(self) -> dict:
        """Return the app_settings row as a Python dict with boolean values."""
        with self.engine.connect() as conn:
            row = conn.execute(
                text("SELECT self_registration_enabled, organization_signup_enabled FROM app_settings WHERE id = 1")
            ).fetchone()
        if row is None:
            # Should never happen; _ensure_app_settings() seeds this row.
            return {"self_registration_enabled": True, "organization_signup_enabled": True}
        return {
            "self_registration_enabled": bool(row[0]),
            "organization_signup_enabled": bool(row[1]),
        }

    def update_app_settings(self, **kwargs) -> None:
        """Update one or more app_settings fields.

        Only keys in _APP_SETTINGS_KEYS are accepted. Unknown keys raise
        ValueError. All values are cast to int (0/1) for SQLite storage.

        Security: column names come from the validated whitelist, never from
        raw user input, so parameterized queries remain safe.
        """
        unknown = set(kwargs.keys()) - self._APP_SETTINGS_KEYS
        if unknown:
            raise ValueError(f"Unknown app_settings keys: {unknown!r}")
        if not kwargs:
            return
        set_clause = ", ".join(f"{k} = :{k}" for k in kwargs)
        params = {k: (1 if v else 0) for k, v in kwargs.items()}
        with self.engine.connect() as conn:
            conn.execute(text(f"UPDATE app_settings SET {set_clause} WHERE id = 1"), params)  # noqa: S608
            conn.commit()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_values(user: User) -> dict:
    return {
        "email": normalize_email(user.email),
        "full_name": user.full_name,
        "hashed_password": user.hashed_password,
        "role": user.role,
        "status": user.status,
        "suspended": 1 if user.suspended else 0,
        "organization_id": user.organization_id,
        "designation": user.designation,
        "created_at": _now_iso(),
    }


def _user_from_request(req: AccessRequest) -> User:
    return User(
        email=req.email,
        role=req.role,
        full_name=req.full_name,
        hashed_password=req.hashed_password,
        status=APPROVED,
        organization_id=req.organization_id,
    )


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        full_name=row.full_name,
        hashed_password=row.hashed_password,
        role=row.role,
        status=row.status,
        suspended=bool(row.suspended),
        organization_id=row.organization_id,
        designation=row.designation,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_access_request(row) -> AccessRequest:
    return AccessRequest(
        id=row.id,
        email=row.email,
        full_name=row.full_name,
        role=row.role,
        organization_id=row.organization_id,
        status=row.status,
        hashed_password=row.hashed_password,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
