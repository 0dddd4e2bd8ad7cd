from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from procureflow.config import settings
from procureflow.models import (
    ApprovalStatus,
    CounterpartyKind,
    PaymentTerms,
    POApprovalRequest,
    ProcurementDocumentStatus as Status,
    ProcurementDocumentType,
    PurchaseOrder,
)
from procureflow.schemas import POTerms
from procureflow.services.audit_service import log_audit
from procureflow.services.counterparty_service import get_counterparty
from procureflow.services.document_lifecycle_service import list_line_items, lock_document
from procureflow.services.document_state import transition
from procureflow.services.errors import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from procureflow.services.po_numbering_service import allocate_po_number
from procureflow.services.po_renderer import PurchaseOrderRenderer

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT)


def _parse_payment_terms(value: str | None) -> PaymentTerms | None:
    if not value:
        return None
    key = value.strip().upper().replace(' ', '_')
    try:
        return PaymentTerms(key)
    except ValueError:
        return None


def _line_dict(description: str, amount: Decimal, quantity=None, unit_price=None, unit=None) -> dict:
    return {
        'description': description,
        'quantity': str(quantity) if quantity is not None else None,
        'unit_price': str(_money(unit_price)) if unit_price is not None else None,
        'unit': unit,
        'amount': str(_money(amount)),
    }


def lock_request(db: Session, *, request_id: int) -> POApprovalRequest:
    db.flush()
    request = db.execute(
        select(POApprovalRequest)
        .where(POApprovalRequest.id == request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not request:
        raise NotFoundError('PO request not found')
    return request


def build_snapshot(db: Session, *, document, terms: POTerms) -> dict:
    """Freeze the commercial terms of a PO request. Raises ValidationError on missing terms."""
    counterparty_id = terms.counterparty_id or document.counterparty_id
    if counterparty_id is None:
        raise ValidationError('Supplier is required')
    total = terms.total_amount if terms.total_amount is not None else document.total_amount
    if total is None:
        raise ValidationError('Total amount is required')
    tax = terms.tax_amount if terms.tax_amount is not None else (document.tax_amount or Decimal('0'))
    if total <= 0:
        raise ValidationError('Total amount must be greater than zero')
    if tax < 0 or tax > total:
        raise ValidationError('Tax amount must be between zero and the total amount')
    payment_terms = terms.payment_terms or _parse_payment_terms(document.payment_terms)
    if payment_terms is None:
        raise ValidationError('Payment terms are required')
    custom_terms = (terms.custom_payment_terms or '').strip() or None
    if payment_terms == PaymentTerms.CUSTOM and not custom_terms:
        raise ValidationError('Custom payment terms require a description')

    counterparty = get_counterparty(db, counterparty_id=counterparty_id, project_id=document.project_id)
    if counterparty.kind != CounterpartyKind.SUPPLIER or not counterparty.active:
        raise ValidationError('Purchase orders can only be issued to active suppliers')

    if terms.line_items is not None:
        lines = [
            _line_dict(item.description, item.amount, item.quantity, item.unit_price, item.unit)
            for item in terms.line_items
        ]
    else:
        lines = [
            _line_dict(row.description, row.amount, row.quantity, row.unit_price, row.unit)
            for row in list_line_items(db, document_id=document.id)
        ]

    return {
        'project_id': document.project_id,
        'source_document_id': document.id,
        'source_document_number': document.document_number,
        'counterparty_id': counterparty.id,
        'counterparty_name': counterparty.name,
        'currency': terms.currency or document.currency or settings.default_currency,
        'subtotal': str(_money(total - tax)),
        'tax_amount': str(_money(tax)),
        'total_amount': str(_money(total)),
        'payment_terms': payment_terms.value,
        'custom_payment_terms': custom_terms,
        'terms_and_conditions': terms.terms_and_conditions or document.terms_and_conditions,
        'delivery_date': terms.delivery_date.isoformat() if terms.delivery_date else None,
        'delivery_address': terms.delivery_address,
        'line_items': lines,
    }


def request_po_generation(
    db: Session,
    *,
    document_id: int,
    terms: POTerms,
    actor_id: int,
) -> POApprovalRequest:
    document = lock_document(db, document_id=document_id)
    if document.document_type != ProcurementDocumentType.SUPPLIER_QUOTATION:
        raise ValidationError('PO requests can only be raised from supplier quotations')
    pending = db.execute(
        select(POApprovalRequest.id).where(
            POApprovalRequest.document_id == document.id,
            POApprovalRequest.status == ApprovalStatus.PENDING,
        )
    ).scalar_one_or_none()
    if pending is not None:
        raise ConflictError(f'Quotation already has a pending PO request ({pending})')
    if document.status != Status.EXTRACTED:
        raise ConflictError(f'Quotation must be EXTRACTED to request a PO, not {document.status.value}')

    snapshot = build_snapshot(db, document=document, terms=terms)
    request = POApprovalRequest(
        document_id=document.id,
        project_id=document.project_id,
        counterparty_id=snapshot['counterparty_id'],
        requested_by=actor_id,
        status=ApprovalStatus.PENDING,
        snapshot=snapshot,
        created_at=_now(),
        updated_at=_now(),
    )
    db.add(request)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError('Quotation already has a pending PO request') from exc

    transition(db, document, Status.PENDING_APPROVAL, actor_id=actor_id, reason='po request created')
    log_audit(
        db,
        actor_id=actor_id,
        action='PO_REQUEST_CREATED',
        document_id=document.id,
        approval_request_id=request.id,
        metadata={'total_amount': snapshot['total_amount'], 'counterparty_id': snapshot['counterparty_id']},
    )
    return request


def _reject(db: Session, *, request_id: int, actor_id: int, comments: str) -> POApprovalRequest:
    request = lock_request(db, request_id=request_id)
    if request.status != ApprovalStatus.PENDING:
        raise ConflictError(f'PO request {request.id} is already {request.status.value}')
    document = lock_document(db, document_id=request.document_id)

    request.status = ApprovalStatus.REJECTED
    request.decided_by = actor_id
    request.decided_at = _now()
    request.decision_comments = comments
    request.updated_at = _now()
    transition(db, document, Status.EXTRACTED, actor_id=actor_id, reason='po request rejected')
    log_audit(
        db,
        actor_id=actor_id,
        action='PO_REQUEST_REJECTED',
        document_id=document.id,
        approval_request_id=request.id,
        metadata={'comments': comments},
    )
    db.commit()
    return request


def _allocate_step(db: Session, *, request_id: int, actor_id: int) -> None:
    request = lock_request(db, request_id=request_id)
    if request.status != ApprovalStatus.PENDING:
        raise ConflictError(f'PO request {request.id} is already {request.status.value}')
    if request.allocated_po_number is not None:
        db.rollback()
        return

    allocated = allocate_po_number(db, project_id=request.project_id)
    request.allocated_po_number = allocated.po_number
    request.allocated_sequence_value = allocated.sequence_value
    request.allocated_scope_key = allocated.scope_key
    request.updated_at = _now()
    log_audit(
        db,
        actor_id=actor_id,
        action='PO_NUMBER_ALLOCATED',
        document_id=request.document_id,
        approval_request_id=request.id,
        metadata={'po_number': allocated.po_number, 'scope_key': allocated.scope_key},
    )
    db.commit()


def _po_snapshot(request: POApprovalRequest) -> dict:
    return {
        **request.snapshot,
        'po_number': request.allocated_po_number,
        'revision_number': 0,
        'approval_request_id': request.id,
    }


def _render_step(db: Session, renderer: PurchaseOrderRenderer, *, request_id: int, actor_id: int) -> None:
    # The request row stays locked while rendering so concurrent approvers wait instead of rendering twice.
    request = lock_request(db, request_id=request_id)
    if request.status != ApprovalStatus.PENDING:
        raise ConflictError(f'PO request {request.id} is already {request.status.value}')
    if request.artifact_key is not None:
        db.rollback()
        return

    try:
        artifact_key = renderer.render(_po_snapshot(request))
    except ExternalServiceError as exc:
        request.last_error = str(exc)
        request.updated_at = _now()
        log_audit(
            db,
            actor_id=actor_id,
            action='PO_RENDER_FAILED',
            document_id=request.document_id,
            approval_request_id=request.id,
            metadata={'po_number': request.allocated_po_number, 'error': str(exc)},
        )
        db.commit()
        logger.error('rendering %s for PO request %s failed: %s', request.allocated_po_number, request.id, exc)
        raise

    request.artifact_key = artifact_key
    request.last_error = None
    request.updated_at = _now()
    db.commit()


def _commit_step(db: Session, *, request_id: int, actor_id: int, comments: str | None) -> POApprovalRequest:
    request = lock_request(db, request_id=request_id)
    if request.status != ApprovalStatus.PENDING:
        raise ConflictError(f'PO request {request.id} is already {request.status.value}')
    document = lock_document(db, document_id=request.document_id)
    snapshot = _po_snapshot(request)

    po = PurchaseOrder(
        po_number=request.allocated_po_number,
        scope_key=request.allocated_scope_key,
        project_id=request.project_id,
        counterparty_id=request.counterparty_id,
        revision_number=0,
        source_document_id=document.id,
        approval_request_id=request.id,
        snapshot=snapshot,
        subtotal=Decimal(snapshot['subtotal']),
        tax_amount=Decimal(snapshot['tax_amount']),
        total_amount=Decimal(snapshot['total_amount']),
        currency=snapshot['currency'],
        artifact_key=request.artifact_key,
        issued_by=actor_id,
        created_at=_now(),
    )
    db.add(po)
    db.flush()

    transition(db, document, Status.APPROVED, actor_id=actor_id, reason='po request approved')
    document.linked_purchase_order_id = po.id
    transition(db, document, Status.LINKED, actor_id=actor_id, reason=f'purchase order {po.po_number} issued')

    request.status = ApprovalStatus.APPROVED
    request.generated_po_id = po.id
    request.decided_by = actor_id
    request.decided_at = _now()
    request.decision_comments = comments
    request.updated_at = _now()
    log_audit(
        db,
        actor_id=actor_id,
        action='PO_REQUEST_APPROVED',
        document_id=document.id,
        approval_request_id=request.id,
        purchase_order_id=po.id,
        metadata={'po_number': po.po_number},
    )
    db.commit()
    logger.info('PO request %s approved, issued %s', request.id, po.po_number)
    return request


def decide_po_request(
    db: Session,
    renderer: PurchaseOrderRenderer,
    *,
    request_id: int,
    decision: ApprovalStatus | str,
    actor_id: int,
    comments: str | None = None,
) -> POApprovalRequest:
    """Approve or reject a pending PO request.

    Approval runs as three committed steps: allocate the PO number, render the artifact,
    then issue the PO and link the quotation. Each step records its own outcome on the
    request, so calling this again after a failure resumes where the last attempt stopped.
    A render failure leaves the request PENDING with its number consumed and raises
    ExternalServiceError. Deciding a request that is no longer PENDING raises ConflictError.
    """
    try:
        decision = ApprovalStatus(decision)
    except ValueError as exc:
        raise ValidationError(f'Unknown decision: {decision}') from exc
    comments = (comments or '').strip() or None

    if decision == ApprovalStatus.REJECTED:
        if not comments:
            raise ValidationError('Comments are required when rejecting a PO request')
        return _reject(db, request_id=request_id, actor_id=actor_id, comments=comments)
    if decision != ApprovalStatus.APPROVED:
        raise ValidationError('Decision must be APPROVED or REJECTED')

    _allocate_step(db, request_id=request_id, actor_id=actor_id)
    _render_step(db, renderer, request_id=request_id, actor_id=actor_id)
    return _commit_step(db, request_id=request_id, actor_id=actor_id, comments=comments)


def get_po_request(db: Session, *, request_id: int, project_id: int | None = None) -> POApprovalRequest:
    request = db.get(POApprovalRequest, request_id)
    if not request or (project_id is not None and request.project_id != project_id):
        raise NotFoundError('PO request not found')
    return request


def list_po_requests(
    db: Session,
    *,
    project_id: int,
    status: ApprovalStatus | None = None,
) -> list[POApprovalRequest]:
    query = select(POApprovalRequest).where(POApprovalRequest.project_id == project_id)
    if status is not None:
        query = query.where(POApprovalRequest.status == status)
    return db.execute(query.order_by(POApprovalRequest.created_at.desc(), POApprovalRequest.id.desc())).scalars().all()
