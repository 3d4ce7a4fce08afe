"""
auth/store.py -- SQLAlchemy Core persistence layer for users and memberships.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Role strings are normalised through Role.parse() when rows are mapped, so a
  legacy "superadmin" row surfaces as Role.SUPER_ADMIN.

Tables:
  users               -- one row per local account
  user_organizations  -- extra organizations a user may work in; is_default
                         picks the organization a fresh login starts in

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Table, Text, UniqueConstraint, func, select
from sqlalchemy.engine import Engine

from auth.models import User
from auth.roles import Role
from core.db import make_engine, metadata

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False),
    Column("organization_id", Integer),
    Column("created_at", String(32), nullable=False),
    Column("last_login", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_memberships = Table(
    "user_organizations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("organization_id", Integer, nullable=False),
    Column("is_default", Integer, nullable=False, server_default="0"),
    UniqueConstraint("user_id", "organization_id", name="uq_user_organization"),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records and organization memberships.

    Usage:
        store = UserStore("sqlite:///auth.db")
        uid = store.create_user(User(username="ade", role=Role.SUPER_ADMIN, hashed_password=...))
        user = store.get_by_username("ade")
        store.close()
    """

    def __init__(self, db_url: str | None = None, *, engine: Engine | None = None) -> None:
        if engine is None:
            if db_url is None:
                raise ValueError("UserStore needs a db_url or an engine")
            engine = make_engine(db_url)
        self.engine: Engine = engine
        metadata.create_all(self.engine, tables=[_users, _memberships])

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    hashed_password=user.hashed_password,
                    role=Role.parse(user.role).value,
                    organization_id=user.organization_id,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, organization_id: int | None = None) -> list[User]:
        """Return users ordered by username, optionally limited to one organization.

        Organization scoping includes users whose home organization matches
        and users holding a membership in it.
        """
        query = _users.select().order_by(_users.c.username)
        if organization_id is not None:
            member_ids = select(_memberships.c.user_id).where(_memberships.c.organization_id == organization_id)
            query = query.where((_users.c.organization_id == organization_id) | (_users.c.id.in_(member_ids)))
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields: role, is_active, hashed_password, organization_id.

        Returns True if a row was updated, False if user_id was not found.
        """
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "role" in fields:
            fields["role"] = Role.parse(fields["role"]).value
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def count_active_admins(self, organization_id: int | None) -> int:
        """Return the number of active admins in an organization.

        Used by PATCH /auth/users/{id} to prevent demoting or deactivating the
        last admin of a tenant.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where(
                    (_users.c.role == Role.ADMIN.value)
                    & (_users.c.is_active == 1)
                    & (_users.c.organization_id == organization_id)
                )
            ).scalar()
        return result or 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Organization memberships
    # ------------------------------------------------------------------

    def add_membership(self, user_id: int, organization_id: int, *, is_default: bool = False) -> None:
        """Grant user_id access to organization_id.

        Marking a membership default clears the flag on the user's other
        memberships in the same transaction.
        """
        with self.engine.begin() as conn:
            if is_default:
                conn.execute(_memberships.update().where(_memberships.c.user_id == user_id).values(is_default=0))
            conn.execute(
                _memberships.insert().values(
                    user_id=user_id,
                    organization_id=organization_id,
                    is_default=1 if is_default else 0,
                )
            )

    def list_memberships(self, user_id: int) -> list[int]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_memberships.c.organization_id)
                .where(_memberships.c.user_id == user_id)
                .order_by(_memberships.c.id)
            ).fetchall()
        return [r[0] for r in rows]

    def has_membership(self, user_id: int, organization_id: int) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_memberships.c.id).where(
                    (_memberships.c.user_id == user_id) & (_memberships.c.organization_id == organization_id)
                )
            ).fetchone()
        return row is not None

    def default_organization(self, user_id: int) -> int | None:
        """Return the organization a fresh login should start in.

        The membership flagged is_default wins; otherwise the first membership;
        otherwise None (callers fall back to the user's home organization).
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_memberships.c.organization_id, _memberships.c.is_default)
                .where(_memberships.c.user_id == user_id)
                .order_by(_memberships.c.is_default.desc(), _memberships.c.id)
            ).fetchall()
        return rows[0][0] if rows else None

    def ping(self) -> bool:
        """Cheap liveness check used by the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        role=Role.parse(row.role),
        organization_id=row.organization_id,
        created_at=row.created_at,
        last_login=row.last_login,
        is_active=bool(row.is_active),
    )
