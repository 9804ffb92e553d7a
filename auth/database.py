"""
auth/database.py -- SQLAlchemy Core schema and connection handling.

One Database object owns the engine for all five auth entities. Components
(CredentialStore, OtpIssuer, SessionManager, PermissionEvaluator, AuditLogger)
receive the same instance by injection; nothing in auth/ opens its own engine
or reaches for an ambient handle.

Security:
  All queries use bound parameters. No f-strings in SQL.

Invariants enforced in the schema rather than in code:
  principals.identifier is UNIQUE.
  role_permissions has a (role, permission) composite primary key.
  otp_tokens carries a partial UNIQUE index on identifier WHERE consumed_at IS
  NULL -- at most one unconsumed token per identifier, whatever the request
  interleaving. SQLite and PostgreSQL both support partial indexes.

Error mapping:
  begin() and connect() translate SQLAlchemyError into StorageUnavailable so
  callers deal with one infrastructure exception type. IntegrityError is the
  exception: it propagates unchanged because callers act on constraint
  violations (duplicate identifier, concurrent OTP issue).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import (
    Boolean,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import StorageUnavailable

logger = logging.getLogger("authcore.database")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

principals = Table(
    "principals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(320), nullable=False, unique=True),  # normalized e-mail
    Column("hashed_password", Text),  # NULL for OTP-only principals
    Column("role", String(50), nullable=False),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("active_tenant_id", String(64)),
    Column("credential_version", Integer, nullable=False, server_default="1"),
    Column("password_temporary", Boolean, nullable=False, server_default="0"),
    Column("temp_password_expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

otp_tokens = Table(
    "otp_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identifier", String(320), nullable=False),
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
    Column("consumed_reason", String(16)),  # "verified" | "superseded"
)

Index(
    "uq_otp_tokens_unconsumed",
    otp_tokens.c.identifier,
    unique=True,
    sqlite_where=otp_tokens.c.consumed_at.is_(None),
    postgresql_where=otp_tokens.c.consumed_at.is_(None),
)
Index("ix_otp_tokens_expires_at", otp_tokens.c.expires_at)

sessions = Table(
    "sessions",
    metadata,
    Column("token_hash", String(64), primary_key=True),  # HMAC-SHA256 hex of the bearer token
    Column("principal_id", Integer, nullable=False, index=True),
    Column("role", String(50), nullable=False),
    Column("credential_version", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("last_activity", String(32), nullable=False),
)

role_permissions = Table(
    "role_permissions",
    metadata,
    Column("role", String(50), primary_key=True),
    Column("permission", String(100), primary_key=True),
)

audit_events = Table(
    "audit_events",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),  # insertion order tiebreak
    Column("id", String(32), nullable=False, unique=True),  # uuid4 hex
    Column("timestamp", String(32), nullable=False, index=True),
    Column("actor_principal_id", Integer),
    Column("actor_identifier", String(320)),
    Column("role", String(50)),
    Column("action", String(50), nullable=False, index=True),
    Column("entity_type", String(50)),
    Column("entity_id", String(64), index=True),
    Column("metadata", Text),  # JSON object
    Column("success", Boolean, nullable=False),
    Column("error_message", Text),
    Column("ip", String(64)),
    Column("user_agent", Text),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases silently keep their
    "memory" journal mode.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class Database:
    """Engine owner and transaction helper shared by every auth component.

    Usage:
        db = Database("sqlite:///authcore.db")
        with db.begin() as conn:
            conn.execute(...)
        db.close()
    """

    def __init__(self, db_url: str, timeout: float = 5.0) -> None:
        connect_args: dict = {}
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # pysqlite busy timeout: how long a writer waits for the lock.
            connect_args["timeout"] = timeout
        else:
            engine_kwargs["pool_timeout"] = timeout
            engine_kwargs["pool_pre_ping"] = True
        self.url = db_url
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        """Yield a connection inside a transaction; commit on success, roll back on error."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Storage failure: %s", exc.__class__.__name__)
            raise StorageUnavailable(str(exc)) from exc

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        """Yield a connection for reads. Nothing is committed."""
        try:
            with self.engine.connect() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.error("Storage failure: %s", exc.__class__.__name__)
            raise StorageUnavailable(str(exc)) from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.connect() as conn:
                conn.execute(text("SELECT 1"))
        except StorageUnavailable:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()
