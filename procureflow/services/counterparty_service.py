from __future__ import annotations

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from procureflow.models import Counterparty, CounterpartyKind, ProcurementDocumentType
from procureflow.services.errors import NotFoundError, ValidationError
from procureflow.services.matching_service import CandidateName

CUSTOMER_SIDE_TYPES = frozenset({ProcurementDocumentType.CUSTOMER_PO, ProcurementDocumentType.CLIENT_INVOICE})


def counterparty_kind_for(document_type: ProcurementDocumentType | None) -> CounterpartyKind:
    if document_type in CUSTOMER_SIDE_TYPES:
        return CounterpartyKind.CUSTOMER
    return CounterpartyKind.SUPPLIER


def list_candidates(db: Session, *, project_id: int, kind: CounterpartyKind) -> list[CandidateName]:
    rows = db.execute(
        select(Counterparty.id, Counterparty.name)
        .where(
            Counterparty.kind == kind,
            Counterparty.active.is_(True),
            or_(Counterparty.project_id.is_(None), Counterparty.project_id == project_id),
        )
        .order_by(Counterparty.id.asc())
    ).all()
    return [CandidateName(id=row.id, name=row.name) for row in rows]


def get_counterparty(db: Session, *, counterparty_id: int, project_id: int | None = None) -> Counterparty:
    row = db.get(Counterparty, counterparty_id)
    if not row:
        raise NotFoundError('Counterparty not found')
    if project_id is not None and row.project_id is not None and row.project_id != project_id:
        raise ValidationError('Counterparty belongs to a different project')
    return row
