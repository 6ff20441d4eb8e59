"""Status audit trail helper. Adds the event to the caller's session; the caller commits."""
from __future__ import annotations

import uuid
from sqlalchemy.orm import Session

from db.models import StatusEvent


def record_status(
    db: Session,
    document_id: str,
    from_status: str | None,
    to_status: str,
    reason: str | None = None,
) -> None:
    entry = StatusEvent(
        id=str(uuid.uuid4()),
        document_id=document_id,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
    )
    db.add(entry)
