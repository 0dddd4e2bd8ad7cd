from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from procureflow.config import settings
from procureflow.models import PONumberSequence, PurchaseOrder

logger = logging.getLogger(__name__)

COMPANY_SCOPE = 'company'


@dataclass(frozen=True)
class AllocatedNumber:
    scope_key: str
    sequence_value: int
    po_number: str


def scope_key_for(project_id: int, scope: str | None = None) -> str:
    scope = (scope or settings.po_numbering_scope).strip().lower()
    if scope == COMPANY_SCOPE:
        return COMPANY_SCOPE
    return f'project:{project_id}'


def format_po_number(sequence_value: int, *, prefix: str | None = None, padding: int | None = None) -> str:
    prefix = prefix if prefix is not None else settings.po_number_prefix
    padding = padding if padding is not None else settings.po_number_padding
    return f'{prefix}-{str(sequence_value).zfill(padding)}'


def revision_po_number(root_po_number: str, revision_number: int) -> str:
    return f'{root_po_number}-R{revision_number}'


def _insert_ignore(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == 'postgresql':
        return postgresql.insert(PONumberSequence)
    if dialect == 'sqlite':
        return sqlite.insert(PONumberSequence)
    raise RuntimeError(f'Unsupported database dialect for PO numbering: {dialect}')


def _increment(db: Session, scope_key: str) -> int | None:
    return db.execute(
        update(PONumberSequence)
        .where(PONumberSequence.scope_key == scope_key)
        .values(last_value=PONumberSequence.last_value + 1)
        .returning(PONumberSequence.last_value)
    ).scalar_one_or_none()


def ensure_sequence(db: Session, scope_key: str) -> None:
    db.execute(_insert_ignore(db).values(scope_key=scope_key, last_value=0).on_conflict_do_nothing())


def allocate_po_number(db: Session, *, project_id: int, scope: str | None = None) -> AllocatedNumber:
    """Consume the next number in the scope's counter row.

    The increment is a single row-level atomic UPDATE, so concurrent callers in the same
    scope serialize on the row and never observe the same value. The value is consumed as
    soon as the caller's transaction commits, whether or not a PO is ever issued with it.
    """
    scope_key = scope_key_for(project_id, scope)
    value = _increment(db, scope_key)
    if value is None:
        ensure_sequence(db, scope_key)
        value = _increment(db, scope_key)
    if value is None:
        raise RuntimeError(f'PO number sequence {scope_key} could not be allocated')

    po_number = format_po_number(value)
    logger.info('allocated PO number %s in scope %s', po_number, scope_key)
    return AllocatedNumber(scope_key=scope_key, sequence_value=value, po_number=po_number)


def peek_last_value(db: Session, *, scope_key: str) -> int:
    value = db.execute(
        select(PONumberSequence.last_value).where(PONumberSequence.scope_key == scope_key)
    ).scalar_one_or_none()
    return value or 0


def next_revision_number(db: Session, *, root_po: PurchaseOrder) -> int:
    rows = db.execute(
        select(PurchaseOrder.revision_number).where(
            (PurchaseOrder.id == root_po.id) | (PurchaseOrder.root_po_id == root_po.id)
        )
    ).scalars().all()
    return max(rows, default=0) + 1
