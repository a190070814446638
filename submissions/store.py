"""
submissions/store.py -- SQLAlchemy-backed persistence for contact submissions.

Uses SQLAlchemy Core (not ORM) so the dataclass in submissions/models.py
remains the authoritative domain representation.

Pattern: Repository + Data Mapper. SubmissionStore is the repository;
_row_to_submission is the mapper. Route handlers never touch SQL directly.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = SubmissionStore()                               # SQLite default
    store = SubmissionStore("postgresql://user:pw@host/db") # PostgreSQL
    sub_id = store.create(Submission(name="Ada", email="ada@example.com"))
    store.update_status(sub_id, "archived")
    store.set_read(sub_id, True)
    active = store.list(status="active")
    store.close()
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine

from submissions.models import STATUS_ACTIVE, VALID_STATUSES, Submission

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'ccm_submissions.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_submissions = Table(
    "submissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("email", String(255), nullable=False),
    Column("phone", String(20)),
    Column("organization", String(100)),
    Column("message", Text),
    Column("status", String(20), nullable=False, server_default=STATUS_ACTIVE),
    Column("is_read", Integer, nullable=False, server_default="0"),
    Column("submitted_at", String(32), nullable=False),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode. Set per-connection; PRAGMAs are not pooled."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class SubmissionStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    def create(self, submission: Submission) -> int:
        """Insert a new submission and return its assigned database ID."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _submissions.insert().values(
                    name=submission.name,
                    email=submission.email,
                    phone=submission.phone,
                    organization=submission.organization,
                    message=submission.message,
                    status=submission.status,
                    is_read=1 if submission.is_read else 0,
                    submitted_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get(self, submission_id: int) -> Optional[Submission]:
        with self.engine.connect() as conn:
            row = conn.execute(_submissions.select().where(_submissions.c.id == submission_id)).fetchone()
        return _row_to_submission(row) if row is not None else None

    def list(self, status: Optional[str] = None) -> list[Submission]:
        """Return submissions newest first. status None or "all" returns every row."""
        query = _submissions.select()
        if status and status != "all":
            query = query.where(_submissions.c.status == status)
        query = query.order_by(_submissions.c.submitted_at.desc(), _submissions.c.id.desc())
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_submission(r) for r in rows]

    def update_status(self, submission_id: int, status: str) -> bool:
        """Move a submission between active / deleted / archived.

        Raises ValueError for an unknown status. Returns False if the ID does
        not exist.
        """
        if status not in VALID_STATUSES:
            raise ValueError(f"Invalid status: {status!r}")
        with self.engine.connect() as conn:
            result = conn.execute(
                _submissions.update().where(_submissions.c.id == submission_id).values(status=status)
            )
            conn.commit()
        return result.rowcount > 0

    def set_read(self, submission_id: int, read: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _submissions.update().where(_submissions.c.id == submission_id).values(is_read=1 if read else 0)
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_submission(row) -> Submission:
    return Submission(
        id=row.id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        organization=row.organization,
        message=row.message,
        status=row.status,
        is_read=bool(row.is_read),
        submitted_at=row.submitted_at,
    )
