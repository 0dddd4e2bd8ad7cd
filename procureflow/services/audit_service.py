from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from procureflow.models import AuditLog, ProcurementDocument
from procureflow.services.errors import IntegrityWarning

logger = logging.getLogger(__name__)


def log_audit(
    db: Session,
    *,
    actor_id: int | None,
    action: str,
    document_id: int | None = None,
    approval_request_id: int | None = None,
    purchase_order_id: int | None = None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_id=actor_id,
            action=action,
            document_id=document_id,
            approval_request_id=approval_request_id,
            purchase_order_id=purchase_order_id,
            ip=ip,
            meta=metadata or {},
        )
    )


def record_warning(
    db: Session,
    document: ProcurementDocument,
    warning: IntegrityWarning,
    *,
    actor_id: int | None = None,
) -> None:
    logger.warning('document %s: %s (%s)', document.id, warning.message, warning.code)
    # Reassign so the JSON column is flagged dirty.
    document.warnings = [*(document.warnings or []), warning.as_dict()]
    log_audit(
        db,
        actor_id=actor_id,
        action='INTEGRITY_WARNING',
        document_id=document.id,
        metadata=warning.as_dict(),
    )


def list_audit_entries(
    db: Session,
    *,
    document_id: int | None = None,
    approval_request_id: int | None = None,
    action: str | None = None,
) -> list[AuditLog]:
    query = select(AuditLog).order_by(AuditLog.id.asc())
    if document_id is not None:
        query = query.where(AuditLog.document_id == document_id)
    if approval_request_id is not None:
        query = query.where(AuditLog.approval_request_id == approval_request_id)
    if action is not None:
        query = query.where(AuditLog.action == action)
    return db.execute(query).scalars().all()
