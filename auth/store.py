"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; the _row_to_* functions are the mappers. The
service, lockout engine and route code never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(provider, provider_user_id) on oauth_accounts guarantees a provider
  identity links to at most one user. UNIQUE(user_id) on account_locks makes
  lock_account() an atomic upsert (INSERT .. ON CONFLICT DO UPDATE) rather
  than a check-then-act race between concurrent failed logins.

Timestamps are stored as fixed-width ISO strings (core.clock.to_iso) so that
string comparison in WHERE and ORDER BY clauses is chronological.

Layer rule: no imports from api/, cache/, or mail/.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    text,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import AccountLock, LoginAttempt, OAuthAccount, SecurityEvent, SecurityEventType, User
from core.clock import Clock, from_iso, to_iso, utcnow
from core.errors import EmailAlreadyExists, OAuthAccountConflict

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("full_name", String(255), nullable=False, server_default=""),
    Column("avatar_url", Text, nullable=False, server_default=""),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_oauth_accounts = Table(
    "oauth_accounts",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("provider", String(30), nullable=False),
    Column("provider_user_id", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_user_id", name="uq_oauth_identity"),
    UniqueConstraint("user_id", "provider", name="uq_oauth_user_provider"),
)

_login_attempts = Table(
    "login_attempts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36)),  # NULL when the email matched no account
    Column("ip_address", String(64), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("location", String(255), nullable=False, server_default=""),
    Column("successful", Integer, nullable=False),
    Column("attempted_at", String(32), nullable=False),
    Index("ix_login_attempts_user_time", "user_id", "attempted_at"),
)

_account_locks = Table(
    "account_locks",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), nullable=False, unique=True),
    Column("locked_at", String(32), nullable=False),
    Column("unlock_at", String(32), nullable=False),
    Column("reason", Text, nullable=False, server_default=""),
    Column("created_by", String(64), nullable=False, server_default="system"),
)

_security_events = Table(
    "security_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), nullable=False),
    Column("event_type", String(40), nullable=False),
    Column("ip_address", String(64), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("location", String(255), nullable=False, server_default=""),
    Column("description", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    Index("ix_security_events_user_time", "user_id", "created_at"),
)

# Columns update_user() accepts. Anything else is a programming error.
_MUTABLE_USER_FIELDS = {
    "email",
    "hashed_password",
    "full_name",
    "avatar_url",
    "email_verified",
    "is_active",
    "role",
}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases ignore it.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, OAuth links, login attempts, locks and security events.

    Usage:
        store = UserStore("sqlite:///./authgate.db")
        user = store.create_user(User(email="a@example.com", hashed_password=hash_password("s3cret!")))
        store.get_by_email("a@example.com")
        store.close()

    Errors: SQLAlchemyError propagates to the caller, except for the two
    uniqueness violations that have a domain meaning (EmailAlreadyExists,
    OAuthAccountConflict). AuthService decides which failures are critical.
    """

    def __init__(self, db_url: str, clock: Clock = utcnow) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        self._clock = clock
        _metadata.create_all(self.engine)

    def ping(self) -> None:
        """Raise if the database is unreachable. Used by the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a new user and return it with id and timestamps populated.

        Raises EmailAlreadyExists if the email is taken (including the case
        where a concurrent request inserted it first).
        """
        now = self._clock()
        user.id = user.id or str(uuid.uuid4())
        user.created_at = user.updated_at = now
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _users.insert().values(
                        id=user.id,
                        email=user.email,
                        hashed_password=user.hashed_password,
                        full_name=user.full_name,
                        avatar_url=user.avatar_url,
                        email_verified=1 if user.email_verified else 0,
                        is_active=1 if user.is_active else 0,
                        role=user.role,
                        created_at=to_iso(now),
                        updated_at=to_iso(now),
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise EmailAlreadyExists(f"email already registered: {user.email}") from exc
        return user

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Exact match. Callers normalize (strip + lowercase) before calling."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: see _MUTABLE_USER_FIELDS. Booleans are converted to
        0/1. updated_at is stamped automatically.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        for flag in ("email_verified", "is_active"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        fields["updated_at"] = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=to_iso(self._clock())))
            conn.commit()

    def delete_user(self, user_id: str) -> bool:
        """Delete the user with their OAuth links, lock, attempts and events in one transaction."""
        with self.engine.connect() as conn:
            for table in (_oauth_accounts, _account_locks, _login_attempts, _security_events):
                conn.execute(table.delete().where(table.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # OAuth links
    # ------------------------------------------------------------------

    def create_oauth_account(self, account: OAuthAccount) -> OAuthAccount:
        """Link a provider identity to a user.

        Raises OAuthAccountConflict if the identity is already linked (to
        anyone) or the user already has a link for this provider.
        """
        now = self._clock()
        account.id = account.id or str(uuid.uuid4())
        account.created_at = now
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _oauth_accounts.insert().values(
                        id=account.id,
                        user_id=account.user_id,
                        provider=account.provider,
                        provider_user_id=account.provider_user_id,
                        created_at=to_iso(now),
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise OAuthAccountConflict(f"{account.provider} identity already linked") from exc
        return account

    def get_oauth_account(self, provider: str, provider_user_id: str) -> OAuthAccount | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _oauth_accounts.select().where(
                    (_oauth_accounts.c.provider == provider) & (_oauth_accounts.c.provider_user_id == provider_user_id)
                )
            ).fetchone()
        return _row_to_oauth_account(row) if row is not None else None

    def get_oauth_accounts(self, user_id: str) -> list[OAuthAccount]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _oauth_accounts.select()
                .where(_oauth_accounts.c.user_id == user_id)
                .order_by(_oauth_accounts.c.created_at)
            ).fetchall()
        return [_row_to_oauth_account(r) for r in rows]

    def delete_oauth_account(self, user_id: str, provider: str) -> bool:
        """Remove a user's link for `provider`. user_id is part of the filter (IDOR guard)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _oauth_accounts.delete().where(
                    (_oauth_accounts.c.user_id == user_id) & (_oauth_accounts.c.provider == provider)
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Login attempts (append-only)
    # ------------------------------------------------------------------

    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        attempt.attempted_at = attempt.attempted_at or self._clock()
        with self.engine.connect() as conn:
            result = conn.execute(
                _login_attempts.insert().values(
                    user_id=attempt.user_id,
                    ip_address=attempt.ip_address,
                    user_agent=attempt.user_agent,
                    location=attempt.location,
                    successful=1 if attempt.successful else 0,
                    attempted_at=to_iso(attempt.attempted_at),
                )
            )
            conn.commit()
            attempt.id = result.inserted_primary_key[0]
        return attempt

    def get_recent_login_attempts(self, user_id: str, limit: int = 10) -> list[LoginAttempt]:
        """Return the user's most recent attempts, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _login_attempts.select()
                .where(_login_attempts.c.user_id == user_id)
                .order_by(_login_attempts.c.attempted_at.desc(), _login_attempts.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_login_attempt(r) for r in rows]

    # ------------------------------------------------------------------
    # Account locks
    # ------------------------------------------------------------------

    def lock_account(self, user_id: str, until: datetime, reason: str, created_by: str = "system") -> AccountLock:
        """Create or replace the user's lock in one statement.

        Repeated calls (concurrent failures, or a failed attempt while already
        locked) leave exactly one row with the latest unlock_at.
        """
        now = self._clock()
        values = {
            "user_id": user_id,
            "locked_at": to_iso(now),
            "unlock_at": to_iso(until),
            "reason": reason,
            "created_by": created_by,
        }
        insert = postgresql.insert if self.engine.dialect.name == "postgresql" else sqlite.insert
        stmt = insert(_account_locks).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[_account_locks.c.user_id],
            set_={k: stmt.excluded[k] for k in ("locked_at", "unlock_at", "reason", "created_by")},
        )
        with self.engine.connect() as conn:
            conn.execute(stmt)
            conn.commit()
        return AccountLock(user_id=user_id, locked_at=now, unlock_at=until, reason=reason, created_by=created_by)

    def unlock_account(self, user_id: str) -> bool:
        """Delete the user's lock row. Returns False if there was none."""
        with self.engine.connect() as conn:
            result = conn.execute(_account_locks.delete().where(_account_locks.c.user_id == user_id))
            conn.commit()
        return result.rowcount > 0

    def get_account_lock(self, user_id: str) -> AccountLock | None:
        """Return the lock row whether or not it has expired."""
        with self.engine.connect() as conn:
            row = conn.execute(_account_locks.select().where(_account_locks.c.user_id == user_id)).fetchone()
        return _row_to_account_lock(row) if row is not None else None

    def is_account_locked(self, user_id: str, now: datetime) -> AccountLock | None:
        """Return the lock if it is still active at `now`, else None.

        Expired rows are left in place; they are harmless and get replaced by
        the next lock_account() upsert.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _account_locks.select().where(
                    (_account_locks.c.user_id == user_id) & (_account_locks.c.unlock_at > to_iso(now))
                )
            ).fetchone()
        return _row_to_account_lock(row) if row is not None else None

    # ------------------------------------------------------------------
    # Security events (append-only)
    # ------------------------------------------------------------------

    def record_security_event(self, ev: SecurityEvent) -> SecurityEvent:
        ev.created_at = ev.created_at or self._clock()
        with self.engine.connect() as conn:
            result = conn.execute(
                _security_events.insert().values(
                    user_id=ev.user_id,
                    event_type=SecurityEventType(ev.event_type).value,
                    ip_address=ev.ip_address,
                    user_agent=ev.user_agent,
                    location=ev.location,
                    description=ev.description,
                    created_at=to_iso(ev.created_at),
                )
            )
            conn.commit()
            ev.id = result.inserted_primary_key[0]
        return ev

    def get_user_security_events(
        self, user_id: str, limit: int = 50, since: datetime | None = None
    ) -> list[SecurityEvent]:
        """Return the user's events, newest first, optionally only those after `since`."""
        query = _security_events.select().where(_security_events.c.user_id == user_id)
        if since is not None:
            query = query.where(_security_events.c.created_at > to_iso(since))
        query = query.order_by(_security_events.c.created_at.desc(), _security_events.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_security_event(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    m = row._mapping
    return User(
        id=m["id"],
        email=m["email"],
        hashed_password=m["hashed_password"],
        full_name=m["full_name"] or "",
        avatar_url=m["avatar_url"] or "",
        email_verified=bool(m["email_verified"]),
        is_active=bool(m["is_active"]),
        role=m["role"],
        created_at=from_iso(m["created_at"]),
        updated_at=from_iso(m["updated_at"]),
        last_login=from_iso(m["last_login"]),
    )


def _row_to_oauth_account(row) -> OAuthAccount:
    m = row._mapping
    return OAuthAccount(
        id=m["id"],
        user_id=m["user_id"],
        provider=m["provider"],
        provider_user_id=m["provider_user_id"],
        created_at=from_iso(m["created_at"]),
    )


def _row_to_login_attempt(row) -> LoginAttempt:
    m = row._mapping
    return LoginAttempt(
        id=m["id"],
        user_id=m["user_id"],
        ip_address=m["ip_address"],
        user_agent=m["user_agent"],
        location=m["location"],
        successful=bool(m["successful"]),
        attempted_at=from_iso(m["attempted_at"]),
    )


def _row_to_account_lock(row) -> AccountLock:
    m = row._mapping
    return AccountLock(
        id=m["id"],
        user_id=m["user_id"],
        locked_at=from_iso(m["locked_at"]),
        unlock_at=from_iso(m["unlock_at"]),
        reason=m["reason"],
        created_by=m["created_by"],
    )


def _row_to_security_event(row) -> SecurityEvent:
    m = row._mapping
    return SecurityEvent(
        id=m["id"],
        user_id=m["user_id"],
        event_type=SecurityEventType(m["event_type"]),
        ip_address=m["ip_address"],
        user_agent=m["user_agent"],
        location=m["location"],
        description=m["description"],
        created_at=from_iso(m["created_at"]),
    )
