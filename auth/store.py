"""
auth/store.py -- SQLAlchemy Core persistence layer for users.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper. Route, service and
dependency code never touches SQL directly, and UserStore itself never touches
a Connection: every statement goes through db.connection.ConnectionManager,
which owns pooling, retries and error translation.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(email) is enforced by the ix_users_email index. Emails are run
  through auth.validation.normalize_email() on every write and every lookup
  in this module, so the index compares normalized strings only.

Errors:
  db.errors.PermanentError with unique_violation=True escapes create_user()
  and update_user() when another row already owns the email. AuthService maps
  that to a duplicate_email outcome. find_or_provision() handles it itself.

Layer rule: no imports from api/. Imports from db/ and core/ are allowed.
"""

from __future__ import annotations

import logging

from sqlalchemy import Column, DateTime, Index, Integer, MetaData, String, Table, Text, delete, func, insert, select
from sqlalchemy import update

from auth.models import NewUser, User, UserUpdate
from auth.passwords import generate_placeholder_password, hash_password
from auth.validation import normalize_email
from db.connection import ConnectionManager
from db.errors import PermanentError

logger = logging.getLogger("authflow.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False),  # normalized, see module docstring
    Column("password", Text, nullable=False),  # bcrypt hash
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()),
    Index("ix_users_email", "email", unique=True),
)

# Columns safe to hand out in listings -- no password hash.
_PUBLIC_COLUMNS = (users.c.id, users.c.name, users.c.email, users.c.created_at, users.c.updated_at)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        db = ConnectionManager("sqlite:///authflow_dev.db")
        store = UserStore(db)
        user = store.create_user(NewUser(name="Ann", email="Ann@Test.com", password="secret1"))
        store.find_by_email("ann@test.com")
        db.dispose()
    """

    def __init__(self, db: ConnectionManager) -> None:
        self.db = db
        self.db.create_schema(metadata)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_email(self, email: str) -> User | None:
        """Look up a user by email. The argument is normalized first."""
        row = self.db.execute(select(users).where(users.c.email == normalize_email(email))).first()
        return _row_to_user(row) if row is not None else None

    def find_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        row = self.db.execute(select(users).where(users.c.id == user_id)).first()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users, newest first. Password hashes are not selected."""
        rowset = self.db.execute(select(*_PUBLIC_COLUMNS).order_by(users.c.created_at.desc(), users.c.id.desc()))
        return [_row_to_user(r) for r in rowset.rows]

    def count_users(self) -> int:
        row = self.db.execute(select(func.count()).select_from(users)).first()
        return int(row[0]) if row is not None else 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, new_user: NewUser) -> User:
        """Hash the password, insert the row and return it.

        Raises db.errors.PermanentError (unique_violation=True) if the
        normalized email is already taken.
        """
        row = self.db.execute(
            insert(users)
            .values(
                name=new_user.name.strip(),
                email=normalize_email(new_user.email),
                password=hash_password(new_user.password),
            )
            .returning(users)
        ).first()
        user = _row_to_user(row)
        logger.info("Created user id=%s", user.id)
        return user

    def update_user(self, user_id: int, changes: UserUpdate) -> User | None:
        """Apply a partial update and return the new row, or None if user_id is unknown.

        Only fields present in changes are written; updated_at is refreshed
        by the column's onupdate. Raises ValueError if changes is empty.
        """
        if changes.is_empty():
            raise ValueError("No fields to update")
        values: dict = {}
        if changes.name is not None:
            values["name"] = changes.name.strip()
        if changes.email is not None:
            values["email"] = normalize_email(changes.email)
        if changes.password is not None:
            values["password"] = hash_password(changes.password)
        row = self.db.execute(update(users).where(users.c.id == user_id).values(**values).returning(users)).first()
        return _row_to_user(row) if row is not None else None

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user record. Returns True if deleted, False if not found."""
        rowset = self.db.execute(delete(users).where(users.c.id == user_id))
        return rowset.rowcount > 0

    def find_or_provision(self, email: str, name: str | None = None) -> tuple[User, bool]:
        """Return the user owning email, creating one if none exists.

        Idempotent and safe under concurrency: if a parallel call inserts the
        same email between our lookup and our insert, the unique index
        rejects ours and we return the winner's row instead.

        New accounts get a random placeholder password (see
        auth.passwords.generate_placeholder_password). name falls back to the
        local part of the email.

        Returns (user, created).
        """
        normalized = normalize_email(email)
        existing = self.find_by_email(normalized)
        if existing is not None:
            return existing, False

        display_name = (name or "").strip() or normalized.split("@", 1)[0]
        try:
            user = self.create_user(
                NewUser(name=display_name, email=normalized, password=generate_placeholder_password())
            )
        except PermanentError as exc:
            if not exc.unique_violation:
                raise
            winner = self.find_by_email(normalized)
            if winner is None:
                raise
            return winner, False
        return user, True


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    # list_users() selects without the password column.
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        password=getattr(row, "password", None),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
