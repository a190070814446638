"""
submissions/models.py -- Domain dataclass for contact-form submissions.

Pure data container with zero logic. Status transitions and filtering live in
submissions/store.py.
"""

from dataclasses import dataclass
from typing import Optional

STATUS_ACTIVE = "active"
STATUS_DELETED = "deleted"
STATUS_ARCHIVED = "archived"
VALID_STATUSES = frozenset({STATUS_ACTIVE, STATUS_DELETED, STATUS_ARCHIVED})


@dataclass
class Submission:
    """A contact / demo request posted from the public site.

    status is soft-delete state: "deleted" and "archived" rows stay in the
    table and can be restored by setting status back to "active".
    is_read is the dashboard's unread marker.

    id is None before the record is written to the database.
    """

    name: str
    email: str
    phone: Optional[str] = None
    organization: Optional[str] = None
    message: Optional[str] = None
    status: str = STATUS_ACTIVE  # "active" | "deleted" | "archived"
    is_read: bool = False
    id: Optional[int] = None
    submitted_at: str = ""  # ISO 8601, set by store on insert
