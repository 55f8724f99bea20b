"""
auth/store.py -- SQLAlchemy Core persistence layer for user accounts.

Pattern: Repository + Data Mapper.
UserRepository is the persistence port the session manager, authenticator,
and service depend on; UserStore is the SQLAlchemy implementation and
_row_to_user is the mapper. Nothing outside this module touches SQL.

Each user row is a small document: preferences, the follower/following id
lists, and the refresh-token session list are JSON columns, so saving a user
after a session change is exactly one UPDATE.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE on email, username and external_id is enforced by the database.
  SQLite and Postgres both treat NULLs as distinct, so any number of
  local-only users may have external_id = NULL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import JSON, Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from auth.models import RefreshTokenRecord, User, default_preferences

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # stored lowercase
    Column("username", String(30), nullable=False, unique=True),  # stored lowercase
    Column("display_name", String(100), nullable=False),
    Column("external_id", String(255), unique=True),  # NULL for local-only users
    Column("hashed_password", Text),  # NULL for external-only users
    Column("auth_provider", String(20), nullable=False, server_default="local"),
    Column("avatar", Text),
    Column("bio", String(500), nullable=False, server_default=""),
    Column("preferences", JSON),
    Column("followers", JSON),
    Column("following", JSON),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login", String(32)),
    Column("refresh_tokens", JSON),
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


def _dump_sessions(records: list[RefreshTokenRecord]) -> list[dict]:
    return [
        {
            "token_hash": r.token_hash,
            "created_at": r.created_at.isoformat(),
            "expires_at": r.expires_at.isoformat(),
            "ip_address": r.ip_address,
            "user_agent": r.user_agent,
        }
        for r in records
    ]


def _load_sessions(raw: list[dict] | None) -> list[RefreshTokenRecord]:
    return [
        RefreshTokenRecord(
            token_hash=r["token_hash"],
            created_at=datetime.fromisoformat(r["created_at"]),
            expires_at=datetime.fromisoformat(r["expires_at"]),
            ip_address=r.get("ip_address"),
            user_agent=r.get("user_agent"),
        )
        for r in (raw or [])
    ]


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------


class UserRepository(Protocol):
    """Persistence port for the auth core. UserStore is the production adapter."""

    def create_user(self, user: User) -> User: ...

    def get_by_id(self, user_id: int) -> User | None: ...

    def get_by_email(self, email: str) -> User | None: ...

    def get_by_username(self, username: str) -> User | None: ...

    def get_by_external_id(self, external_id: str) -> User | None: ...

    def save_user(self, user: User) -> bool: ...

    def update_last_login(self, user_id: int) -> str: ...


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """SQLAlchemy Core repository for User documents.

    Usage:
        store = UserStore("sqlite:///:memory:")
        user = store.create_user(User(email="a@x.com", username="alice", display_name="Alice"))
        found = store.get_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///hattbooks_accounts.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a new user and return it with id and timestamps filled in.

        Raises sqlalchemy.exc.IntegrityError if email, username or external_id
        already exists. The service maps that to a 409 for the race where two
        registrations pass the pre-insert conflict checks concurrently.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    username=user.username,
                    display_name=user.display_name,
                    external_id=user.external_id,
                    hashed_password=user.hashed_password,
                    auth_provider=user.auth_provider,
                    avatar=user.avatar,
                    bio=user.bio,
                    preferences=user.preferences,
                    followers=user.followers,
                    following=user.following,
                    is_active=1 if user.is_active else 0,
                    last_login=user.last_login,
                    refresh_tokens=_dump_sessions(user.refresh_tokens),
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            new_id = result.inserted_primary_key[0]
        return replace(user, id=new_id, created_at=now, updated_at=now)

    def save_user(self, user: User) -> bool:
        """Persist every mutable field of user in a single UPDATE.

        hashed_password is written as-is; hashing happens before this call and
        only when the password actually changed.

        Returns True if a row was updated, False if user.id was not found.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user.id)
                .values(
                    email=user.email,
                    username=user.username,
                    display_name=user.display_name,
                    external_id=user.external_id,
                    hashed_password=user.hashed_password,
                    auth_provider=user.auth_provider,
                    avatar=user.avatar,
                    bio=user.bio,
                    preferences=user.preferences,
                    is_active=1 if user.is_active else 0,
                    last_login=user.last_login,
                    refresh_tokens=_dump_sessions(user.refresh_tokens),
                    updated_at=_now_iso(),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> str:
        """Stamp the current UTC timestamp as last_login and return it."""
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=now))
            conn.commit()
        return now

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        return self._fetch_one(_users.c.id == user_id)

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Includes the password hash."""
        return self._fetch_one(_users.c.email == email.strip().lower())

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by username (case-insensitive)."""
        return self._fetch_one(_users.c.username == username.strip().lower())

    def get_by_external_id(self, external_id: str) -> User | None:
        """Look up a user by the identity provider's subject id (exact match)."""
        return self._fetch_one(_users.c.external_id == external_id)

    def _fetch_one(self, clause) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(clause)).fetchone()
        return _row_to_user(row) if row is not None else None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        display_name=row.display_name,
        external_id=row.external_id,
        hashed_password=row.hashed_password,
        auth_provider=row.auth_provider,
        avatar=row.avatar,
        bio=row.bio or "",
        preferences=row.preferences if row.preferences is not None else default_preferences(),
        followers=list(row.followers or []),
        following=list(row.following or []),
        is_active=bool(row.is_active),
        last_login=row.last_login,
        created_at=row.created_at,
        updated_at=row.updated_at,
        refresh_tokens=_load_sessions(row.refresh_tokens),
    )
