from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import Session

from procureflow.models import ProcurementDocument, ProcurementDocumentStatus as Status
from procureflow.services.audit_service import log_audit
from procureflow.services.errors import ConflictError

ALLOWED_TRANSITIONS: dict[Status, frozenset[Status]] = {
    Status.UPLOADED: frozenset({Status.EXTRACTED, Status.FAILED, Status.CANCELLED}),
    Status.EXTRACTED: frozenset({Status.PENDING_APPROVAL, Status.LINKED, Status.CANCELLED}),
    Status.FAILED: frozenset({Status.CANCELLED}),
    # Exits from PENDING_APPROVAL are driven by the approval request outcome only.
    Status.PENDING_APPROVAL: frozenset({Status.APPROVED, Status.EXTRACTED}),
    Status.APPROVED: frozenset({Status.LINKED, Status.PAID, Status.CANCELLED}),
    Status.LINKED: frozenset({Status.PAID, Status.CANCELLED}),
    Status.REJECTED: frozenset(),
    Status.CANCELLED: frozenset(),
    Status.PAID: frozenset(),
}

TERMINAL_STATUSES = frozenset(status for status, exits in ALLOWED_TRANSITIONS.items() if not exits)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def can_transition(current: Status, target: Status) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_terminal(status: Status) -> bool:
    return status in TERMINAL_STATUSES


def transition(
    db: Session,
    document: ProcurementDocument,
    target: Status,
    *,
    actor_id: int | None = None,
    reason: str | None = None,
) -> ProcurementDocument:
    current = document.status
    if not can_transition(current, target):
        raise ConflictError(f'Document {document.id} cannot move from {current.value} to {target.value}')
    document.status = target
    document.updated_at = _now()
    metadata = {'from': current.value, 'to': target.value}
    if reason:
        metadata['reason'] = reason
    log_audit(
        db,
        actor_id=actor_id,
        action='DOCUMENT_STATUS_CHANGED',
        document_id=document.id,
        metadata=metadata,
    )
    return document
