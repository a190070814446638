"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper (same as submissions/store.py).
CredentialStore is the repository; the _row_to_* functions are the mappers.
Engines, routes and dependencies never touch SQL directly.

Tables:
  admins       -- AdminPrincipal, provisioned out-of-band. Credential column
                  is "password" (digest, or legacy plaintext).
  users        -- ManagedPrincipal, created by invitation acceptance.
                  Credential column is "password_hash".
  invitations  -- hashed single-use invitation tokens.
  otp_records  -- hashed one-time codes with an optional staged payload.

The credential column differs per principal table. set_password() and
set_password_by_email() branch on the source tag so callers never pick a
column themselves.

Transactions:
  Every write method accepts an optional Connection. Without one it runs in
  its own short engine.begin() transaction; with one it joins the caller's
  transaction, which is how OTP confirmation and invitation acceptance make
  "consume the secret" and "write the principal" commit or roll back together.

Uniqueness:
  users.email, users.username and invitations.username carry UNIQUE
  constraints. Application pre-checks give friendlier errors; the constraint
  turns a check-then-insert race into an IntegrityError the engines map to
  AlreadyExists.

Timestamps are UTC ISO-8601 strings with fixed microsecond precision, so
string comparison in SQL equals time comparison.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, core/, or submissions/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import (
    SOURCE_ADMINS,
    SOURCE_USERS,
    AdminPrincipal,
    Invitation,
    ManagedPrincipal,
    OtpRecord,
)

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'ccm_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_admins = Table(
    "admins",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(100), nullable=False, unique=True),
    Column("email", String(255)),
    Column("password", Text, nullable=False),  # bcrypt digest or legacy plaintext
)

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("role", String(50), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_invitations = Table(
    "invitations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("role", String(50), nullable=False),
    Column("token_hash", String(255), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("invited_by", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("username", String(255), unique=True),
)

_otp_records = Table(
    "otp_records",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("operation_type", String(50), nullable=False),
    Column("owner_email", String(255), nullable=False),
    Column("subject_email", String(255)),
    Column("code_hash", String(255), nullable=False),
    Column("payload", Text),  # staged value, e.g. a pending password hash
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Index("ix_otp_owner_operation", "owner_email", "operation_type"),
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
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _norm_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for principals, invitations and OTP records.

    Usage:
        store = CredentialStore()
        store.create_admin(AdminPrincipal(username="admin", password=hash_password("secret")))
        admin = store.get_admin_by_username("admin")
        with store.begin() as conn:
            store.mark_invitation_used(invite_id, conn=conn)
            store.create_user(user, conn=conn)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def begin(self):
        """Open a transaction. Commits on clean exit, rolls back on any exception."""
        return self.engine.begin()

    @contextmanager
    def _tx(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
        else:
            with self.engine.begin() as own:
                yield own

    # ------------------------------------------------------------------
    # Administrators
    # ------------------------------------------------------------------

    def get_admin_by_username(self, username: str, conn: Connection | None = None) -> AdminPrincipal | None:
        with self._tx(conn) as c:
            row = c.execute(_admins.select().where(_admins.c.username == username)).fetchone()
        return _row_to_admin(row) if row is not None else None

    def get_admin_by_email(self, email: str, conn: Connection | None = None) -> AdminPrincipal | None:
        with self._tx(conn) as c:
            row = c.execute(_admins.select().where(func.lower(_admins.c.email) == _norm_email(email))).fetchone()
        return _row_to_admin(row) if row is not None else None

    def create_admin(self, admin: AdminPrincipal) -> int:
        """Insert an administrator. Raises IntegrityError on a duplicate username."""
        with self._tx(None) as c:
            result = c.execute(
                _admins.insert().values(
                    username=admin.username,
                    email=_norm_email(admin.email) if admin.email else None,
                    password=admin.password,
                )
            )
            return result.inserted_primary_key[0]

    # ------------------------------------------------------------------
    # Managed principals (users table)
    # ------------------------------------------------------------------

    def get_user_by_username(
        self, username: str, active_only: bool = False, conn: Connection | None = None
    ) -> ManagedPrincipal | None:
        query = _users.select().where(_users.c.username == username)
        if active_only:
            query = query.where(_users.c.is_active == 1)
        with self._tx(conn) as c:
            row = c.execute(query).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(
        self, email: str, active_only: bool = False, conn: Connection | None = None
    ) -> ManagedPrincipal | None:
        query = _users.select().where(func.lower(_users.c.email) == _norm_email(email))
        if active_only:
            query = query.where(_users.c.is_active == 1)
        with self._tx(conn) as c:
            row = c.execute(query).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_id(self, user_id: int) -> ManagedPrincipal | None:
        with self._tx(None) as c:
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[ManagedPrincipal]:
        """Return all managed principals, newest first."""
        with self._tx(None) as c:
            rows = c.execute(_users.select().order_by(_users.c.created_at.desc(), _users.c.id.desc())).fetchall()
        return [_row_to_user(r) for r in rows]

    def create_user(self, user: ManagedPrincipal, conn: Connection | None = None) -> int:
        """Insert a managed principal and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email or username is taken.
        """
        now = to_iso(utcnow())
        with self._tx(conn) as c:
            result = c.execute(
                _users.insert().values(
                    first_name=user.first_name,
                    last_name=user.last_name,
                    username=user.username,
                    email=_norm_email(user.email),
                    role=user.role,
                    password_hash=user.password_hash,
                    is_active=1 if user.is_active else 0,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def email_exists(self, email: str, conn: Connection | None = None) -> bool:
        """True if email belongs to a managed principal or an admins-table row.

        Password reset resolves an email to the admins table first, so a
        managed principal sharing an admin's email could never reset.
        """
        norm = _norm_email(email)
        with self._tx(conn) as c:
            for query in (
                select(_users.c.id).where(func.lower(_users.c.email) == norm),
                select(_admins.c.id).where(func.lower(_admins.c.email) == norm),
            ):
                if c.execute(query).fetchone() is not None:
                    return True
        return False

    def username_taken(self, username: str, conn: Connection | None = None) -> bool:
        """True if username belongs to a principal or is reserved by an unused invitation.

        Admin usernames are included: the resolver checks admins first, so a
        managed principal sharing an admin's username could never log in.
        """
        with self._tx(conn) as c:
            for query in (
                select(_users.c.id).where(_users.c.username == username),
                select(_admins.c.id).where(_admins.c.username == username),
                select(_invitations.c.id).where((_invitations.c.username == username) & (_invitations.c.used == 0)),
            ):
                if c.execute(query).fetchone() is not None:
                    return True
        return False

    def set_user_active(self, user_id: int, active: bool) -> bool:
        with self._tx(None) as c:
            result = c.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(is_active=1 if active else 0, updated_at=to_iso(utcnow()))
            )
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        """Admins-table rows plus active users-table principals with role admin."""
        with self._tx(None) as c:
            admins = c.execute(select(func.count()).select_from(_admins)).scalar() or 0
            users = (
                c.execute(
                    select(func.count())
                    .select_from(_users)
                    .where((func.lower(_users.c.role) == "admin") & (_users.c.is_active == 1))
                ).scalar()
                or 0
            )
        return admins + users

    # ------------------------------------------------------------------
    # Credential updates (branch on source table)
    # ------------------------------------------------------------------

    def set_password(self, source: str, username: str, digest: str, conn: Connection | None = None) -> bool:
        """Replace the stored credential of the principal identified by username."""
        with self._tx(conn) as c:
            if source == SOURCE_ADMINS:
                result = c.execute(_admins.update().where(_admins.c.username == username).values(password=digest))
            elif source == SOURCE_USERS:
                result = c.execute(
                    _users.update()
                    .where(_users.c.username == username)
                    .values(password_hash=digest, updated_at=to_iso(utcnow()))
                )
            else:
                raise ValueError(f"Unknown credential source: {source!r}")
        return result.rowcount > 0

    def set_password_by_email(self, source: str, email: str, digest: str, conn: Connection | None = None) -> bool:
        """Replace the stored credential of the principal identified by email."""
        email = _norm_email(email)
        with self._tx(conn) as c:
            if source == SOURCE_ADMINS:
                result = c.execute(
                    _admins.update().where(func.lower(_admins.c.email) == email).values(password=digest)
                )
            elif source == SOURCE_USERS:
                result = c.execute(
                    _users.update()
                    .where(func.lower(_users.c.email) == email)
                    .values(password_hash=digest, updated_at=to_iso(utcnow()))
                )
            else:
                raise ValueError(f"Unknown credential source: {source!r}")
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def create_invitation(self, invite: Invitation, conn: Connection | None = None) -> int:
        """Insert an invitation. Raises IntegrityError if the username is already reserved."""
        with self._tx(conn) as c:
            result = c.execute(
                _invitations.insert().values(
                    email=_norm_email(invite.email),
                    first_name=invite.first_name,
                    last_name=invite.last_name,
                    role=invite.role,
                    token_hash=invite.token_hash,
                    expires_at=to_iso(invite.expires_at),
                    used=1 if invite.used else 0,
                    invited_by=invite.invited_by,
                    created_at=to_iso(utcnow()),
                    username=invite.username,
                )
            )
            return result.inserted_primary_key[0]

    def get_invitation(self, invite_id: int, conn: Connection | None = None) -> Invitation | None:
        with self._tx(conn) as c:
            row = c.execute(_invitations.select().where(_invitations.c.id == invite_id)).fetchone()
        return _row_to_invitation(row) if row is not None else None

    def pending_invitation_exists(self, email: str, now: datetime, conn: Connection | None = None) -> bool:
        """True if an unused, unexpired invitation already targets email."""
        with self._tx(conn) as c:
            row = c.execute(
                select(_invitations.c.id).where(
                    (func.lower(_invitations.c.email) == _norm_email(email))
                    & (_invitations.c.used == 0)
                    & (_invitations.c.expires_at >= to_iso(now))
                )
            ).fetchone()
        return row is not None

    def active_invitations(self, now: datetime, conn: Connection | None = None) -> list[Invitation]:
        """Unused, unexpired invitations -- the candidate set for token validation."""
        with self._tx(conn) as c:
            rows = c.execute(
                _invitations.select()
                .where((_invitations.c.used == 0) & (_invitations.c.expires_at >= to_iso(now)))
                .order_by(_invitations.c.id)
            ).fetchall()
        return [_row_to_invitation(r) for r in rows]

    def list_invitations(self) -> list[Invitation]:
        with self._tx(None) as c:
            rows = c.execute(
                _invitations.select().order_by(_invitations.c.created_at.desc(), _invitations.c.id.desc())
            ).fetchall()
        return [_row_to_invitation(r) for r in rows]

    def mark_invitation_used(self, invite_id: int, conn: Connection | None = None) -> bool:
        """Consume an invitation. Returns False if it was already used."""
        with self._tx(conn) as c:
            result = c.execute(
                _invitations.update()
                .where((_invitations.c.id == invite_id) & (_invitations.c.used == 0))
                .values(used=1)
            )
        return result.rowcount > 0

    def rotate_invitation_token(
        self, invite_id: int, token_hash: str, expires_at: datetime, conn: Connection | None = None
    ) -> bool:
        """Replace the token hash and expiry of an unused invitation in place."""
        with self._tx(conn) as c:
            result = c.execute(
                _invitations.update()
                .where((_invitations.c.id == invite_id) & (_invitations.c.used == 0))
                .values(token_hash=token_hash, expires_at=to_iso(expires_at))
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # OTP records
    # ------------------------------------------------------------------

    def _otp_tuple(self, owner_email: str, subject_email: str | None, operation: str):
        subject_clause = (
            _otp_records.c.subject_email.is_(None)
            if subject_email is None
            else func.lower(_otp_records.c.subject_email) == _norm_email(subject_email)
        )
        return (
            (func.lower(_otp_records.c.owner_email) == _norm_email(owner_email))
            & subject_clause
            & (_otp_records.c.operation_type == operation)
        )

    def supersede_otps(
        self, owner_email: str, subject_email: str | None, operation: str, conn: Connection | None = None
    ) -> int:
        """Mark every unused record for the tuple as used. Returns the count."""
        with self._tx(conn) as c:
            result = c.execute(
                _otp_records.update()
                .where(self._otp_tuple(owner_email, subject_email, operation) & (_otp_records.c.used == 0))
                .values(used=1)
            )
        return result.rowcount

    def insert_otp(self, record: OtpRecord, conn: Connection | None = None) -> int:
        with self._tx(conn) as c:
            result = c.execute(
                _otp_records.insert().values(
                    operation_type=record.operation,
                    owner_email=_norm_email(record.owner_email),
                    subject_email=_norm_email(record.subject_email) if record.subject_email else None,
                    code_hash=record.code_hash,
                    payload=record.payload,
                    expires_at=to_iso(record.expires_at),
                    used=0,
                    created_at=to_iso(utcnow()),
                )
            )
            return result.inserted_primary_key[0]

    def unused_otps(
        self, owner_email: str, subject_email: str | None, operation: str, conn: Connection | None = None
    ) -> list[OtpRecord]:
        """Unused records for the tuple, expired or not. Expiry is judged by the caller."""
        with self._tx(conn) as c:
            rows = c.execute(
                _otp_records.select()
                .where(self._otp_tuple(owner_email, subject_email, operation) & (_otp_records.c.used == 0))
                .order_by(_otp_records.c.id.desc())
            ).fetchall()
        return [_row_to_otp(r) for r in rows]

    def mark_otp_used(self, otp_id: int, conn: Connection | None = None) -> bool:
        """Consume a record. Returns False if another request consumed it first."""
        with self._tx(conn) as c:
            result = c.execute(
                _otp_records.update()
                .where((_otp_records.c.id == otp_id) & (_otp_records.c.used == 0))
                .values(used=1)
            )
        return result.rowcount > 0

    def purge_expired_otps(self, now: datetime) -> int:
        """Delete OTP rows whose expiry has passed. Returns the number removed."""
        with self._tx(None) as c:
            result = c.execute(
                delete(_otp_records).where(
                    or_(_otp_records.c.expires_at < to_iso(now), _otp_records.c.expires_at.is_(None))
                )
            )
        return result.rowcount

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as c:
            c.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_admin(row) -> AdminPrincipal:
    return AdminPrincipal(
        id=row.id,
        username=row.username,
        email=row.email,
        password=row.password,
    )


def _row_to_user(row) -> ManagedPrincipal:
    return ManagedPrincipal(
        id=row.id,
        first_name=row.first_name,
        last_name=row.last_name,
        username=row.username,
        email=row.email,
        role=row.role,
        password_hash=row.password_hash,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_invitation(row) -> Invitation:
    return Invitation(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        role=row.role,
        token_hash=row.token_hash,
        expires_at=parse_iso(row.expires_at),
        used=bool(row.used),
        invited_by=row.invited_by,
        created_at=row.created_at,
        username=row.username,
    )


def _row_to_otp(row) -> OtpRecord:
    return OtpRecord(
        id=row.id,
        operation=row.operation_type,
        owner_email=row.owner_email,
        subject_email=row.subject_email,
        code_hash=row.code_hash,
        payload=row.payload,
        expires_at=parse_iso(row.expires_at),
        used=bool(row.used),
        created_at=row.created_at,
    )
