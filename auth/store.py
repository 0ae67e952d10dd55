"""
auth/store.py -- SQLAlchemy Core persistence layer for the auth engine.

Pattern: Repository + Data Mapper.
  AuthStore owns the engine, the schema and the transaction boundary. The
  _row_to_* functions are the mappers that turn rows into auth.models
  dataclasses. Services in auth/ build their statements from the Table
  objects defined here and run them on a connection handed out by
  AuthStore.transaction() or AuthStore.read(). api/ never touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Secrets (tokens, codes, keys) are only ever stored as HMAC-SHA256 hex
  digests; passwords only as bcrypt hashes.

Concurrency:
  transaction() runs one atomic read-modify-write. On SQLite the
  transaction opens with BEGIN IMMEDIATE so the write lock is taken up front
  and two concurrent logins for one user serialise instead of both reading
  the same session count. On PostgreSQL rows that decide an outcome are read
  with SELECT ... FOR UPDATE (a no-op on SQLite, where the database-level
  lock already covers it).

  The per-statement timeout comes from connect_args. A driver
  OperationalError (busy/locked/timeout/connection refused) surfaces as
  StoreUnavailable, a retryable 503. read() retries read-only work a bounded
  number of times; transaction() never retries.

Timestamps are fixed-width ISO-8601 strings (core.timeutil) so SQL string
comparison agrees with time order.

Layer rule: may import from core/ and auth.models / auth.errors only.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from typing import TypeVar

from sqlalchemy import (
    Boolean,
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
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

from auth.errors import StoreUnavailable
from auth.models import (
    ApiKey,
    Company,
    InternalUserCompany,
    LoginAttempt,
    LoginEvent,
    LoginEventType,
    MfaChallenge,
    OAuthAuthorizationCode,
    OAuthClient,
    OAuthClientType,
    OAuthToken,
    PasswordPolicy,
    Role,
    RoleType,
    Session,
    SessionLimitStrategy,
    TrustedDevice,
    User,
    UserCompany,
    UserInvite,
    UserRole,
    UserToken,
    UserType,
)
from core.config import get_settings
from core.timeutil import from_iso, to_iso, utc_now

logger = logging.getLogger("tenantgate.auth.store")

T = TypeVar("T")

_TS = 32  # width of a stored timestamp

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

companies = Table(
    "companies",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("max_sessions_per_user", Integer),  # NULL = application default
    Column("session_limit_strategy", String(30), nullable=False, default=SessionLimitStrategy.REVOKE_OLDEST.value),
    Column("password_policy", Text),  # JSON blob (PasswordPolicy)
    Column("mfa_required", Boolean, nullable=False, default=False),
    Column("max_seats", Integer),  # NULL = unlimited
    Column("lockout_threshold", Integer),
    Column("lockout_minutes", Integer),
    Column("created_at", String(_TS), nullable=False),
)

users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # stored lower-cased
    Column("user_type", String(20), nullable=False, default=UserType.COMPANY.value),
    Column("company_id", Integer, nullable=False),
    Column("password_hash", Text),
    Column("name_first", String(100), nullable=False, default=""),
    Column("name_last", String(100), nullable=False, default=""),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("email_verified", Boolean, nullable=False, default=False),
    Column("mfa_enabled", Boolean, nullable=False, default=False),
    Column("totp_secret", String(64)),
    Column("failed_login_attempts", Integer, nullable=False, default=0),
    Column("last_failed_login_at", String(_TS)),
    Column("locked_until", String(_TS)),
    Column("force_logout_at", String(_TS)),
    Column("needs_reset_password", Boolean, nullable=False, default=False),
    Column("password_changed_at", String(_TS)),
    Column("max_sessions", Integer),
    Column("last_login_at", String(_TS)),
    Column("permissions_version", Integer, nullable=False, default=0),
    Column("version", Integer, nullable=False, default=0),
    Column("created_at", String(_TS), nullable=False),
)

password_history = Table(
    "password_history",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("password_hash", Text, nullable=False),
    Column("created_at", String(_TS), nullable=False),
)

user_companies = Table(
    "user_companies",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("company_id", Integer, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("is_pinned", Boolean, nullable=False, default=False),
    Column("joined_at", String(_TS), nullable=False),
    Column("last_accessed_at", String(_TS)),
    Column("deactivated_at", String(_TS)),
    Column("deactivated_by", Integer),
    UniqueConstraint("user_id", "company_id", name="uq_user_companies_user_company"),
)

internal_user_companies = Table(
    "internal_user_companies",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("company_id", Integer, nullable=False),
    Column("granted_by", Integer),
    Column("is_pinned", Boolean, nullable=False, default=False),
    Column("last_accessed_at", String(_TS)),
    Column("created_at", String(_TS), nullable=False),
    UniqueConstraint("user_id", "company_id", name="uq_internal_user_companies_user_company"),
)

roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("display_name", String(255), nullable=False, default=""),
    Column("description", Text, nullable=False, default=""),
    Column("type", String(20), nullable=False),
    Column("company_id", Integer, index=True),  # NULL for system and platform roles
    Column("permissions", Text, nullable=False, default="[]"),
    Column("company_permissions", Text, nullable=False, default="[]"),
    Column("is_default", Boolean, nullable=False, default=False),
    Column("created_at", String(_TS), nullable=False),
    Column("updated_at", String(_TS)),
)

# UNIQUE(user_id, role_id, company_id) covers company-scoped rows. SQLite and
# PostgreSQL both treat NULL company_id values as distinct, so duplicate
# platform-role assignments are also rejected in code (permissions.assign_role).
user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("role_id", Integer, nullable=False),
    Column("company_id", Integer),
    Column("created_at", String(_TS), nullable=False),
    UniqueConstraint("user_id", "role_id", "company_id", name="uq_user_roles_triple"),
)

sessions = Table(
    "sessions",
    _metadata,
    Column("sid", String(255), primary_key=True),
    Column("user_id", Integer, index=True),
    Column("company_id", Integer),
    Column("active_company_id", Integer),
    Column("source", String(20), nullable=False),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("mfa_verified", Boolean, nullable=False, default=False),
    Column("remember_me", Boolean, nullable=False, default=False),
    Column("source_user_id", Integer),
    Column("created_at", String(_TS), nullable=False),
    Column("last_activity_at", String(_TS), nullable=False),
    Column("expires_at", String(_TS), nullable=False),
    Column("absolute_expires_at", String(_TS), nullable=False),
    Column("revoked_at", String(_TS)),
    Column("revoked_reason", String(50)),
)

login_attempts = Table(
    "login_attempts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("user_id", Integer),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("success", Boolean, nullable=False),
    Column("failure_reason", String(50)),
    Column("created_at", String(_TS), nullable=False),
    Index("ix_login_attempts_email_created", "email", "created_at"),
)

login_events = Table(
    "login_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(50), nullable=False, index=True),
    Column("user_id", Integer, index=True),
    Column("email", String(255)),
    Column("company_id", Integer),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("metadata", Text),  # JSON blob
    Column("created_at", String(_TS), nullable=False),
)


def _user_token_table(name: str) -> Table:
    return Table(
        name,
        _metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("user_id", Integer, nullable=False, index=True),
        Column("token_hash", String(64), nullable=False, unique=True),
        Column("expires_at", String(_TS), nullable=False),
        Column("used_at", String(_TS)),
        Column("created_at", String(_TS), nullable=False),
    )


password_reset_tokens = _user_token_table("password_reset_tokens")
email_verification_tokens = _user_token_table("email_verification_tokens")

mfa_recovery_codes = Table(
    "mfa_recovery_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),
    Column("used_at", String(_TS)),
    Column("created_at", String(_TS), nullable=False),
)

mfa_challenges = Table(
    "mfa_challenges",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("session_id", String(255), nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("expires_at", String(_TS), nullable=False),
    Column("used_at", String(_TS)),
    Column("created_at", String(_TS), nullable=False),
)

trusted_devices = Table(
    "trusted_devices",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("device_name", String(255), nullable=False, default=""),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("expires_at", String(_TS), nullable=False),
    Column("last_seen_at", String(_TS)),
    Column("created_at", String(_TS), nullable=False),
)

api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("key_prefix", String(12), nullable=False),  # first 12 chars, display only
    Column("created_at", String(_TS), nullable=False),
    Column("last_used", String(_TS)),
    Column("is_active", Boolean, nullable=False, default=True),
)

oauth_clients = Table(
    "oauth_clients",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", String(64), nullable=False, unique=True),
    Column("client_secret_hash", String(64)),
    Column("name", String(255), nullable=False),
    Column("client_type", String(20), nullable=False),
    Column("redirect_uris", Text, nullable=False, default="[]"),
    Column("allowed_scopes", Text, nullable=False, default="[]"),
    Column("require_pkce", Boolean, nullable=False, default=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", String(_TS), nullable=False),
)

oauth_authorization_codes = Table(
    "oauth_authorization_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code_hash", String(64), nullable=False, unique=True),
    Column("client_id", Integer, nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("company_id", Integer),
    Column("redirect_uri", Text, nullable=False),
    Column("scopes", Text, nullable=False, default="[]"),
    Column("code_challenge", String(128)),
    Column("code_challenge_method", String(10)),
    Column("state", String(255)),
    Column("expires_at", String(_TS), nullable=False),
    Column("used_at", String(_TS)),
    Column("created_at", String(_TS), nullable=False),
)

oauth_tokens = Table(
    "oauth_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", Integer, nullable=False),
    Column("user_id", Integer, nullable=False, index=True),
    Column("company_id", Integer),
    Column("scopes", Text, nullable=False, default="[]"),
    Column("access_token_hash", String(64), nullable=False, unique=True),
    Column("access_token_prefix", String(12), nullable=False),
    Column("access_token_expires_at", String(_TS), nullable=False),
    Column("refresh_token_hash", String(64), unique=True),
    Column("refresh_token_prefix", String(12)),
    Column("refresh_token_expires_at", String(_TS)),
    Column("refresh_token_family", String(64), nullable=False, index=True),
    Column("replaced_by_token_id", Integer),
    Column("revoked_at", String(_TS)),
    Column("revoked_reason", String(50)),
    Column("created_at", String(_TS), nullable=False),
)

user_invites = Table(
    "user_invites",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, index=True),
    Column("company_id", Integer, nullable=False),
    Column("invited_by_id", Integer),
    Column("role_ids", Text, nullable=False, default="[]"),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("is_existing_user_invite", Boolean, nullable=False, default=False),
    Column("existing_user_id", Integer),
    Column("expires_at", String(_TS), nullable=False),
    Column("accepted_at", String(_TS)),
    Column("revoked_at", String(_TS)),
    Column("created_at", String(_TS), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Per-connection SQLite setup.

    isolation_level=None stops the sqlite3 driver from issuing its own
    deferred BEGIN, so _begin_sqlite() below controls the transaction mode.
    WAL lets readers proceed while a writer holds the lock.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _begin_sqlite(conn: Connection) -> None:
    if conn.get_execution_options().get("write_lock"):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        conn.exec_driver_sql("BEGIN")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Engine, schema and transaction boundary for every auth table.

    Usage:
        store = AuthStore("sqlite:///:memory:")
        with store.transaction() as conn:
            company_id = store.insert_company(conn, Company(name="Acme"))
        company = store.read(lambda conn: store.fetch_company(conn, company_id))
        store.close()
    """

    def __init__(
        self,
        db_url: str | None = None,
        *,
        timeout_seconds: float | None = None,
        read_retries: int | None = None,
    ) -> None:
        settings = get_settings()
        self.db_url = db_url or settings.database_url
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.store_timeout_seconds
        self.read_retries = read_retries if read_retries is not None else settings.store_read_retries
        self.is_sqlite = self.db_url.startswith("sqlite")

        connect_args: dict = {}
        if self.is_sqlite:
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = self.timeout_seconds
        elif self.db_url.startswith("postgresql"):
            connect_args["options"] = f"-c statement_timeout={int(self.timeout_seconds * 1000)}"
        self.engine: Engine = create_engine(self.db_url, connect_args=connect_args)
        if self.is_sqlite:
            event.listen(self.engine, "connect", _configure_sqlite)
            event.listen(self.engine, "begin", _begin_sqlite)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Transaction boundary
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside one atomic write transaction.

        Commits on normal exit, rolls back if the body raises. Not retried:
        a mutation that timed out may or may not have been applied by the
        caller's previous attempt, so the decision to retry is the client's.
        """
        try:
            with self.engine.connect() as conn:
                conn.execution_options(write_lock=True)
                with conn.begin():
                    yield conn
        except OperationalError as exc:
            logger.warning("Store write failed: %s", exc.orig if exc.orig is not None else exc)
            raise StoreUnavailable() from exc

    def read(self, fn: Callable[[Connection], T]) -> T:
        """Run a read-only function, retrying transient store errors.

        fn must not write: it may run more than once.
        """
        attempts = max(1, self.read_retries + 1)
        last_exc: OperationalError | None = None
        for attempt in range(1, attempts + 1):
            try:
                with self.engine.connect() as conn:
                    return fn(conn)
            except OperationalError as exc:
                last_exc = exc
                logger.warning("Store read failed (attempt %d/%d): %s", attempt, attempts, exc.orig)
                if attempt < attempts:
                    time.sleep(0.05 * attempt)
        raise StoreUnavailable() from last_exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1)).scalar()
            return True
        except OperationalError:
            return False

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Companies
    # ------------------------------------------------------------------

    def insert_company(self, conn: Connection, company: Company) -> int:
        result = conn.execute(
            companies.insert().values(
                name=company.name,
                is_active=company.is_active,
                max_sessions_per_user=company.max_sessions_per_user,
                session_limit_strategy=SessionLimitStrategy(company.session_limit_strategy).value,
                password_policy=json.dumps(asdict(company.password_policy)),
                mfa_required=company.mfa_required,
                max_seats=company.max_seats,
                lockout_threshold=company.lockout_threshold,
                lockout_minutes=company.lockout_minutes,
                created_at=to_iso(utc_now()),
            )
        )
        return result.inserted_primary_key[0]

    def fetch_company(self, conn: Connection, company_id: int) -> Company | None:
        row = conn.execute(companies.select().where(companies.c.id == company_id)).fetchone()
        return _row_to_company(row) if row is not None else None

    def create_company(self, company: Company) -> int:
        with self.transaction() as conn:
            return self.insert_company(conn, company)

    def get_company(self, company_id: int) -> Company | None:
        return self.read(lambda conn: self.fetch_company(conn, company_id))

    def update_company(self, company_id: int, **fields) -> bool:
        """Update policy fields on a company. password_policy may be a PasswordPolicy."""
        if isinstance(fields.get("password_policy"), PasswordPolicy):
            fields["password_policy"] = json.dumps(asdict(fields["password_policy"]))
        if isinstance(fields.get("session_limit_strategy"), SessionLimitStrategy):
            fields["session_limit_strategy"] = fields["session_limit_strategy"].value
        with self.transaction() as conn:
            result = conn.execute(companies.update().where(companies.c.id == company_id).values(**fields))
        return result.rowcount > 0

    def list_companies(self) -> list[Company]:
        return self.read(
            lambda conn: [_row_to_company(r) for r in conn.execute(companies.select().order_by(companies.c.name))]
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def insert_user(self, conn: Connection, user: User) -> int:
        """Insert a user and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = to_iso(utc_now())
        result = conn.execute(
            users.insert().values(
                email=user.email.strip().lower(),
                user_type=UserType(user.user_type).value,
                company_id=user.company_id,
                password_hash=user.password_hash,
                name_first=user.name_first,
                name_last=user.name_last,
                is_active=user.is_active,
                email_verified=user.email_verified,
                mfa_enabled=user.mfa_enabled,
                totp_secret=user.totp_secret,
                needs_reset_password=user.needs_reset_password,
                password_changed_at=now if user.password_hash else None,
                max_sessions=user.max_sessions,
                created_at=now,
            )
        )
        return result.inserted_primary_key[0]

    def fetch_user(self, conn: Connection, user_id: int, *, for_update: bool = False) -> User | None:
        stmt = users.select().where(users.c.id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        row = conn.execute(stmt).fetchone()
        return _row_to_user(row) if row is not None else None

    def fetch_user_by_email(self, conn: Connection, email: str) -> User | None:
        row = conn.execute(users.select().where(users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, conn: Connection, user_id: int, **fields) -> bool:
        """Update columns on a user row. datetime values are serialised."""
        values = {k: (to_iso(v) if isinstance(v, datetime) else v) for k, v in fields.items()}
        result = conn.execute(users.update().where(users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def bump_permissions_version(self, conn: Connection, user_ids: list[int] | int) -> None:
        """Invalidate cached permission sets for the given users."""
        ids = [user_ids] if isinstance(user_ids, int) else list(user_ids)
        if not ids:
            return
        conn.execute(
            users.update().where(users.c.id.in_(ids)).values(permissions_version=users.c.permissions_version + 1)
        )

    def create_user(self, user: User) -> int:
        with self.transaction() as conn:
            return self.insert_user(conn, user)

    def get_user(self, user_id: int) -> User | None:
        return self.read(lambda conn: self.fetch_user(conn, user_id))

    def get_user_by_email(self, email: str) -> User | None:
        return self.read(lambda conn: self.fetch_user_by_email(conn, email))

    # ------------------------------------------------------------------
    # Sessions (shared lookups; lifecycle lives in auth/sessions.py)
    # ------------------------------------------------------------------

    def fetch_session(self, conn: Connection, sid: str, *, for_update: bool = False) -> Session | None:
        stmt = sessions.select().where(sessions.c.sid == sid)
        if for_update:
            stmt = stmt.with_for_update()
        row = conn.execute(stmt).fetchone()
        return _row_to_session(row) if row is not None else None

    def count_rows(self, conn: Connection, table: Table, *conditions) -> int:
        return conn.execute(select(func.count()).select_from(table).where(*conditions)).scalar() or 0


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------


def dump_list(values) -> str:
    return json.dumps(list(values or []))


def _load_list(raw: str | None) -> list:
    if not raw:
        return []
    return list(json.loads(raw))


def _load_policy(raw: str | None) -> PasswordPolicy:
    if not raw:
        return PasswordPolicy()
    data = json.loads(raw)
    known = {k: v for k, v in data.items() if k in PasswordPolicy.__dataclass_fields__}
    return PasswordPolicy(**known)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_company(row) -> Company:
    return Company(
        id=row.id,
        name=row.name,
        is_active=bool(row.is_active),
        max_sessions_per_user=row.max_sessions_per_user,
        session_limit_strategy=SessionLimitStrategy(row.session_limit_strategy),
        password_policy=_load_policy(row.password_policy),
        mfa_required=bool(row.mfa_required),
        max_seats=row.max_seats,
        lockout_threshold=row.lockout_threshold,
        lockout_minutes=row.lockout_minutes,
        created_at=from_iso(row.created_at),
    )


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        user_type=UserType(row.user_type),
        company_id=row.company_id,
        password_hash=row.password_hash,
        name_first=row.name_first,
        name_last=row.name_last,
        is_active=bool(row.is_active),
        email_verified=bool(row.email_verified),
        mfa_enabled=bool(row.mfa_enabled),
        totp_secret=row.totp_secret,
        failed_login_attempts=row.failed_login_attempts,
        last_failed_login_at=from_iso(row.last_failed_login_at),
        locked_until=from_iso(row.locked_until),
        force_logout_at=from_iso(row.force_logout_at),
        needs_reset_password=bool(row.needs_reset_password),
        password_changed_at=from_iso(row.password_changed_at),
        max_sessions=row.max_sessions,
        last_login_at=from_iso(row.last_login_at),
        permissions_version=row.permissions_version,
        version=row.version,
        created_at=from_iso(row.created_at),
    )


def _row_to_user_company(row) -> UserCompany:
    return UserCompany(
        id=row.id,
        user_id=row.user_id,
        company_id=row.company_id,
        is_active=bool(row.is_active),
        is_pinned=bool(row.is_pinned),
        joined_at=from_iso(row.joined_at),
        last_accessed_at=from_iso(row.last_accessed_at),
        deactivated_at=from_iso(row.deactivated_at),
        deactivated_by=row.deactivated_by,
    )


def _row_to_internal_user_company(row) -> InternalUserCompany:
    return InternalUserCompany(
        id=row.id,
        user_id=row.user_id,
        company_id=row.company_id,
        granted_by=row.granted_by,
        is_pinned=bool(row.is_pinned),
        last_accessed_at=from_iso(row.last_accessed_at),
        created_at=from_iso(row.created_at),
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        display_name=row.display_name,
        description=row.description,
        type=RoleType(row.type),
        company_id=row.company_id,
        permissions=_load_list(row.permissions),
        company_permissions=_load_list(row.company_permissions),
        is_default=bool(row.is_default),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )


def _row_to_user_role(row) -> UserRole:
    return UserRole(
        id=row.id,
        user_id=row.user_id,
        role_id=row.role_id,
        company_id=row.company_id,
        created_at=from_iso(row.created_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        sid=row.sid,
        user_id=row.user_id,
        company_id=row.company_id,
        active_company_id=row.active_company_id,
        source=row.source,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        mfa_verified=bool(row.mfa_verified),
        remember_me=bool(row.remember_me),
        source_user_id=row.source_user_id,
        created_at=from_iso(row.created_at),
        last_activity_at=from_iso(row.last_activity_at),
        expires_at=from_iso(row.expires_at),
        absolute_expires_at=from_iso(row.absolute_expires_at),
        revoked_at=from_iso(row.revoked_at),
        revoked_reason=row.revoked_reason,
    )


def _row_to_login_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        id=row.id,
        email=row.email,
        user_id=row.user_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        success=bool(row.success),
        failure_reason=row.failure_reason,
        created_at=from_iso(row.created_at),
    )


def _row_to_login_event(row) -> LoginEvent:
    return LoginEvent(
        id=row.id,
        event_type=LoginEventType(row.event_type),
        user_id=row.user_id,
        email=row.email,
        company_id=row.company_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        metadata=json.loads(row.metadata) if row.metadata else {},
        created_at=from_iso(row.created_at),
    )


def _row_to_user_token(row) -> UserToken:
    return UserToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=from_iso(row.expires_at),
        used_at=from_iso(row.used_at),
        created_at=from_iso(row.created_at),
    )


def _row_to_mfa_challenge(row) -> MfaChallenge:
    return MfaChallenge(
        id=row.id,
        user_id=row.user_id,
        session_id=row.session_id,
        code_hash=row.code_hash,
        attempts=row.attempts,
        expires_at=from_iso(row.expires_at),
        used_at=from_iso(row.used_at),
        created_at=from_iso(row.created_at),
    )


def _row_to_trusted_device(row) -> TrustedDevice:
    return TrustedDevice(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        device_name=row.device_name,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        expires_at=from_iso(row.expires_at),
        last_seen_at=from_iso(row.last_seen_at),
        created_at=from_iso(row.created_at),
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        created_at=from_iso(row.created_at),
        last_used=from_iso(row.last_used),
        is_active=bool(row.is_active),
    )


def _row_to_oauth_client(row) -> OAuthClient:
    return OAuthClient(
        id=row.id,
        client_id=row.client_id,
        client_secret_hash=row.client_secret_hash,
        name=row.name,
        client_type=OAuthClientType(row.client_type),
        redirect_uris=_load_list(row.redirect_uris),
        allowed_scopes=_load_list(row.allowed_scopes),
        require_pkce=bool(row.require_pkce),
        is_active=bool(row.is_active),
        created_at=from_iso(row.created_at),
    )


def _row_to_authorization_code(row) -> OAuthAuthorizationCode:
    return OAuthAuthorizationCode(
        id=row.id,
        code_hash=row.code_hash,
        client_id=row.client_id,
        user_id=row.user_id,
        company_id=row.company_id,
        redirect_uri=row.redirect_uri,
        scopes=_load_list(row.scopes),
        code_challenge=row.code_challenge,
        code_challenge_method=row.code_challenge_method,
        state=row.state,
        expires_at=from_iso(row.expires_at),
        used_at=from_iso(row.used_at),
        created_at=from_iso(row.created_at),
    )


def _row_to_oauth_token(row) -> OAuthToken:
    return OAuthToken(
        id=row.id,
        client_id=row.client_id,
        user_id=row.user_id,
        company_id=row.company_id,
        scopes=_load_list(row.scopes),
        access_token_hash=row.access_token_hash,
        access_token_prefix=row.access_token_prefix,
        access_token_expires_at=from_iso(row.access_token_expires_at),
        refresh_token_hash=row.refresh_token_hash,
        refresh_token_prefix=row.refresh_token_prefix,
        refresh_token_expires_at=from_iso(row.refresh_token_expires_at),
        refresh_token_family=row.refresh_token_family,
        replaced_by_token_id=row.replaced_by_token_id,
        revoked_at=from_iso(row.revoked_at),
        revoked_reason=row.revoked_reason,
        created_at=from_iso(row.created_at),
    )


def _row_to_invite(row) -> UserInvite:
    return UserInvite(
        id=row.id,
        email=row.email,
        company_id=row.company_id,
        invited_by_id=row.invited_by_id,
        role_ids=_load_list(row.role_ids),
        token_hash=row.token_hash,
        is_existing_user_invite=bool(row.is_existing_user_invite),
        existing_user_id=row.existing_user_id,
        expires_at=from_iso(row.expires_at),
        accepted_at=from_iso(row.accepted_at),
        revoked_at=from_iso(row.revoked_at),
        created_at=from_iso(row.created_at),
    )
