from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import exists, func, or_, select
from sqlalchemy.orm import Session, aliased

from procureflow.config import settings
from procureflow.models import (
    ProcurementDocument,
    ProcurementDocumentStatus as Status,
    ProcurementDocumentType,
    PurchaseOrder,
)
from procureflow.services.audit_service import log_audit, record_warning
from procureflow.services.document_lifecycle_service import list_line_items, lock_document
from procureflow.services.document_state import transition
from procureflow.services.errors import (
    ConflictError,
    ExternalServiceError,
    IntegrityWarning,
    NotFoundError,
    ValidationError,
)
from procureflow.services.po_numbering_service import next_revision_number, revision_po_number
from procureflow.services.po_renderer import PurchaseOrderRenderer

logger = logging.getLogger(__name__)

LINKABLE_TYPES = frozenset({ProcurementDocumentType.SUPPLIER_INVOICE, ProcurementDocumentType.VARIATION_ORDER})
BILLED_STATUSES = (Status.LINKED, Status.PAID)
# Document-to-document links: source type -> target type.
DOCUMENT_LINK_TARGETS = {
    ProcurementDocumentType.SUPPLIER_PO: ProcurementDocumentType.SUPPLIER_QUOTATION,
    ProcurementDocumentType.SUPPLIER_INVOICE: ProcurementDocumentType.VARIATION_ORDER,
}
QUOTATION_LINK_STATUSES = frozenset({Status.EXTRACTED, Status.PENDING_APPROVAL, Status.APPROVED, Status.LINKED, Status.PAID})
CENT = Decimal('0.01')


@dataclass(frozen=True)
class LinkageProposal:
    po_id: int
    po_number: str
    amount_delta_pct: Decimal | None
    supplier_matches: bool
    remaining_unbilled: Decimal


@dataclass
class LinkageOutcome:
    document: ProcurementDocument
    purchase_order: PurchaseOrder
    revision: PurchaseOrder | None = None
    warnings: list[IntegrityWarning] = field(default_factory=list)


@dataclass
class PurchaseOrderLinkages:
    purchase_order: PurchaseOrder
    revisions: list[PurchaseOrder]
    quotations: list[ProcurementDocument]
    invoices: list[ProcurementDocument]
    variation_orders: list[ProcurementDocument]
    remaining_unbilled: Decimal


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_purchase_order(db: Session, *, po_id: int, project_id: int | None = None) -> PurchaseOrder:
    po = db.get(PurchaseOrder, po_id)
    if not po or (project_id is not None and po.project_id != project_id):
        raise NotFoundError('Purchase order not found')
    return po


def _lock_purchase_order(db: Session, *, po_id: int) -> PurchaseOrder:
    db.flush()
    po = db.execute(
        select(PurchaseOrder)
        .where(PurchaseOrder.id == po_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not po:
        raise NotFoundError('Purchase order not found')
    return po


def family(db: Session, po: PurchaseOrder) -> list[PurchaseOrder]:
    root_id = po.family_root_id
    return db.execute(
        select(PurchaseOrder)
        .where(or_(PurchaseOrder.id == root_id, PurchaseOrder.root_po_id == root_id))
        .order_by(PurchaseOrder.revision_number.asc())
    ).scalars().all()


def is_head_revision(db: Session, po: PurchaseOrder) -> bool:
    return not db.execute(select(exists().where(PurchaseOrder.predecessor_id == po.id))).scalar()


def head_revisions(db: Session, *, project_id: int) -> list[PurchaseOrder]:
    successor = aliased(PurchaseOrder)
    return db.execute(
        select(PurchaseOrder)
        .where(
            PurchaseOrder.project_id == project_id,
            ~exists().where(successor.predecessor_id == PurchaseOrder.id),
        )
        .order_by(PurchaseOrder.po_number.asc())
    ).scalars().all()


def _family_link_clause(member_ids: list[int]):
    # Invoices count against the family directly or through one of its variation orders.
    variation = aliased(ProcurementDocument)
    variation_ids = select(variation.id).where(
        variation.document_type == ProcurementDocumentType.VARIATION_ORDER,
        variation.linked_purchase_order_id.in_(member_ids),
    )
    return or_(
        ProcurementDocument.linked_purchase_order_id.in_(member_ids),
        ProcurementDocument.linked_variation_order_id.in_(variation_ids),
    )


def remaining_unbilled(db: Session, po: PurchaseOrder) -> Decimal:
    """Head revision total less every supplier invoice linked anywhere in the PO family."""
    members = family(db, po)
    head = members[-1]
    billed = db.execute(
        select(func.coalesce(func.sum(ProcurementDocument.total_amount), 0)).where(
            ProcurementDocument.document_type == ProcurementDocumentType.SUPPLIER_INVOICE,
            ProcurementDocument.status.in_(BILLED_STATUSES),
            _family_link_clause([m.id for m in members]),
        )
    ).scalar_one()
    return (Decimal(head.total_amount) - Decimal(billed)).quantize(CENT)


def _ensure_unlinked(document: ProcurementDocument) -> None:
    if (
        document.linked_purchase_order_id is not None
        or document.linked_quotation_id is not None
        or document.linked_variation_order_id is not None
    ):
        raise ConflictError(f'Document {document.id} is already linked')


def _linkable_document(document: ProcurementDocument) -> None:
    if document.document_type not in LINKABLE_TYPES:
        raise ValidationError('Only supplier invoices and variation orders can be linked to a purchase order')
    _ensure_unlinked(document)
    if document.total_amount is None:
        raise ValidationError('Document has no total amount to reconcile')


def amount_variance(amount: Decimal, reference: Decimal | None, *, label: str) -> IntegrityWarning | None:
    """Warn when ``amount`` is further from ``reference`` than the configured percentage."""
    if reference is None or Decimal(reference) <= 0:
        return None
    reference = Decimal(reference)
    variance_pct = (abs(Decimal(amount) - reference) / reference * 100).quantize(CENT)
    threshold = settings.amount_variance_threshold_pct
    if variance_pct <= threshold:
        return None
    return IntegrityWarning(
        code='AMOUNT_VARIANCE',
        message=f'Amount differs from {label} by {variance_pct}%',
        details={
            'amount': str(Decimal(amount).quantize(CENT)),
            'reference_amount': str(reference.quantize(CENT)),
            'variance_pct': str(variance_pct),
            'threshold_pct': str(threshold),
        },
    )


def _supplier_mismatch(document: ProcurementDocument, counterparty_id: int | None, *, label: str) -> IntegrityWarning | None:
    if document.counterparty_id == counterparty_id:
        return None
    return IntegrityWarning(
        code='SUPPLIER_MISMATCH',
        message=f'Document supplier differs from the {label} supplier',
        details={'document_counterparty_id': document.counterparty_id, 'linked_counterparty_id': counterparty_id},
    )


def _over_billing(db: Session, document: ProcurementDocument, po: PurchaseOrder) -> IntegrityWarning | None:
    remaining = remaining_unbilled(db, po)
    if Decimal(document.total_amount) <= remaining:
        return None
    document.over_billed = True
    return IntegrityWarning(
        code='OVER_BILLED',
        message='Invoice amount exceeds the remaining unbilled amount of the purchase order',
        details={
            'invoice_amount': str(document.total_amount),
            'remaining_unbilled': str(remaining),
            'po_number': po.po_number,
        },
    )


def propose_linkage(
    db: Session,
    *,
    document_id: int,
    candidate_po_ids: list[int] | None = None,
) -> list[LinkageProposal]:
    document = db.get(ProcurementDocument, document_id)
    if not document:
        raise NotFoundError('Document not found')
    _linkable_document(document)

    if candidate_po_ids is None:
        candidates = head_revisions(db, project_id=document.project_id)
    else:
        candidates = [get_purchase_order(db, po_id=po_id, project_id=document.project_id) for po_id in candidate_po_ids]

    is_invoice = document.document_type == ProcurementDocumentType.SUPPLIER_INVOICE
    amount = Decimal(document.total_amount)
    proposals = []
    for po in candidates:
        remaining = remaining_unbilled(db, po)
        compare_to = remaining if is_invoice and remaining > 0 else Decimal(po.total_amount)
        delta_pct = None
        if compare_to:
            delta_pct = ((amount - compare_to) / compare_to * 100).quantize(CENT)
        proposals.append(
            LinkageProposal(
                po_id=po.id,
                po_number=po.po_number,
                amount_delta_pct=delta_pct,
                supplier_matches=document.counterparty_id is not None and document.counterparty_id == po.counterparty_id,
                remaining_unbilled=remaining,
            )
        )

    proposals.sort(
        key=lambda p: (
            not p.supplier_matches,
            abs(p.amount_delta_pct) if p.amount_delta_pct is not None else Decimal('Infinity'),
            p.po_number,
        )
    )
    return proposals


def _link_invoice(
    db: Session,
    document: ProcurementDocument,
    po: PurchaseOrder,
    *,
    actor_id: int | None,
) -> LinkageOutcome:
    outcome = LinkageOutcome(document=document, purchase_order=po)
    checks = (
        _supplier_mismatch(document, po.counterparty_id, label='purchase order'),
        amount_variance(document.total_amount, po.total_amount, label=po.po_number),
        _over_billing(db, document, po),
    )
    outcome.warnings = [warning for warning in checks if warning is not None]
    for warning in outcome.warnings:
        record_warning(db, document, warning, actor_id=actor_id)
    document.linked_purchase_order_id = po.id
    transition(db, document, Status.LINKED, actor_id=actor_id, reason=f'linked to {po.po_number}')
    return outcome


def _variation_lines(db: Session, document: ProcurementDocument, po: PurchaseOrder, vo_subtotal: Decimal) -> list[dict]:
    lines = [{'description': f'Original purchase order {po.po_number}', 'amount': str(Decimal(po.subtotal).quantize(CENT))}]
    vo_lines = list_line_items(db, document_id=document.id)
    if not vo_lines:
        label = document.document_number or f'#{document.id}'
        return lines + [{'description': f'Variation order {label}', 'amount': str(vo_subtotal.quantize(CENT))}]
    for row in vo_lines:
        lines.append(
            {
                'description': row.description,
                'quantity': str(row.quantity) if row.quantity is not None else None,
                'unit_price': str(row.unit_price) if row.unit_price is not None else None,
                'unit': row.unit,
                'amount': str(Decimal(row.amount).quantize(CENT)),
            }
        )
    return lines


def _link_variation_order(
    db: Session,
    renderer: PurchaseOrderRenderer,
    document: ProcurementDocument,
    po: PurchaseOrder,
    *,
    actor_id: int | None,
) -> LinkageOutcome:
    if not is_head_revision(db, po):
        raise ConflictError(f'{po.po_number} has been superseded; link the variation order to the latest revision')

    root = po if po.root_po_id is None else db.get(PurchaseOrder, po.root_po_id)
    revision_number = next_revision_number(db, root_po=root)
    vo_total = Decimal(document.total_amount)
    vo_tax = Decimal(document.tax_amount or 0)
    vo_subtotal = vo_total - vo_tax

    subtotal = (Decimal(po.subtotal) + vo_subtotal).quantize(CENT)
    tax_amount = (Decimal(po.tax_amount) + vo_tax).quantize(CENT)
    total_amount = (Decimal(po.total_amount) + vo_total).quantize(CENT)
    snapshot = {
        **po.snapshot,
        'po_number': revision_po_number(root.po_number, revision_number),
        'revision_number': revision_number,
        'predecessor_id': po.id,
        'predecessor_po_number': po.po_number,
        'root_po_id': root.id,
        'source_document_id': document.id,
        'source_document_number': document.document_number,
        'approval_request_id': None,
        'subtotal': str(subtotal),
        'tax_amount': str(tax_amount),
        'total_amount': str(total_amount),
        'line_items': _variation_lines(db, document, po, vo_subtotal),
    }

    try:
        artifact_key = renderer.render(snapshot)
    except ExternalServiceError as exc:
        log_audit(
            db,
            actor_id=actor_id,
            action='PO_REVISION_RENDER_FAILED',
            document_id=document.id,
            purchase_order_id=po.id,
            metadata={'po_number': snapshot['po_number'], 'error': str(exc)},
        )
        db.commit()
        logger.error('rendering revision %s failed: %s', snapshot['po_number'], exc)
        raise

    revision = PurchaseOrder(
        po_number=snapshot['po_number'],
        scope_key=root.scope_key,
        project_id=po.project_id,
        counterparty_id=po.counterparty_id,
        revision_number=revision_number,
        predecessor_id=po.id,
        root_po_id=root.id,
        source_document_id=document.id,
        snapshot=snapshot,
        subtotal=subtotal,
        tax_amount=tax_amount,
        total_amount=total_amount,
        currency=po.currency,
        artifact_key=artifact_key,
        issued_by=actor_id,
        created_at=_now(),
    )
    db.add(revision)
    db.flush()

    document.linked_purchase_order_id = po.id
    transition(db, document, Status.LINKED, actor_id=actor_id, reason=f'revised {po.po_number} as {revision.po_number}')
    log_audit(
        db,
        actor_id=actor_id,
        action='PURCHASE_ORDER_REVISED',
        document_id=document.id,
        purchase_order_id=revision.id,
        metadata={'predecessor': po.po_number, 'revision': revision.po_number, 'total_amount': str(total_amount)},
    )
    logger.info('variation order %s revised %s as %s', document.id, po.po_number, revision.po_number)
    return LinkageOutcome(document=document, purchase_order=po, revision=revision)


def confirm_linkage(
    db: Session,
    renderer: PurchaseOrderRenderer,
    *,
    document_id: int,
    po_id: int,
    actor_id: int | None,
) -> LinkageOutcome:
    """Link an EXTRACTED supplier invoice or variation order to a purchase order.

    Invoices are linked as-is; over-billing and supplier mismatches are recorded as
    warnings and never block the link. A variation order issues a new revision of the
    PO (``<root number>-R<n>``) and leaves every existing revision untouched.
    """
    document = lock_document(db, document_id=document_id)
    _linkable_document(document)
    if document.status != Status.EXTRACTED:
        raise ConflictError(f'Document {document.id} must be EXTRACTED to link, not {document.status.value}')
    po = _lock_purchase_order(db, po_id=po_id)
    if po.project_id != document.project_id:
        raise ValidationError('Purchase order belongs to a different project')

    if document.document_type == ProcurementDocumentType.VARIATION_ORDER:
        outcome = _link_variation_order(db, renderer, document, po, actor_id=actor_id)
    else:
        outcome = _link_invoice(db, document, po, actor_id=actor_id)

    log_audit(
        db,
        actor_id=actor_id,
        action='DOCUMENT_LINKED',
        document_id=document.id,
        purchase_order_id=po.id,
        metadata={'po_number': po.po_number, 'warnings': [w.code for w in outcome.warnings]},
    )
    return outcome


def _link_target(db: Session, document: ProcurementDocument, target_document_id: int) -> ProcurementDocument:
    expected = DOCUMENT_LINK_TARGETS.get(document.document_type)
    if expected is None:
        raise ValidationError('Only supplier POs and supplier invoices can be linked to another document')
    if target_document_id == document.id:
        raise ValidationError('A document cannot be linked to itself')
    target = db.get(ProcurementDocument, target_document_id)
    if not target or target.project_id != document.project_id:
        raise NotFoundError('Linked document not found')
    if target.document_type != expected:
        raise ValidationError(f'A {document.document_type.value} can only be linked to a {expected.value}')

    if expected == ProcurementDocumentType.SUPPLIER_QUOTATION:
        if target.status not in QUOTATION_LINK_STATUSES:
            raise ConflictError(f'Quotation {target.id} is {target.status.value} and cannot be linked')
    elif target.status not in BILLED_STATUSES or target.linked_purchase_order_id is None:
        raise ConflictError(f'Variation order {target.id} must be linked to a purchase order first')
    return target


def confirm_document_linkage(
    db: Session,
    *,
    document_id: int,
    target_document_id: int,
    actor_id: int | None,
) -> tuple[ProcurementDocument, ProcurementDocument, list[IntegrityWarning]]:
    """Link a supplier PO to its quotation, or a supplier invoice to a variation order.

    An invoice billed against a variation order counts toward the unbilled amount of the
    purchase order family the variation order revised.
    """
    document = lock_document(db, document_id=document_id)
    target = _link_target(db, document, target_document_id)
    _ensure_unlinked(document)
    if document.status != Status.EXTRACTED:
        raise ConflictError(f'Document {document.id} must be EXTRACTED to link, not {document.status.value}')

    label = target.document_number or f'document {target.id}'
    kind = 'variation order' if target.document_type == ProcurementDocumentType.VARIATION_ORDER else 'quotation'
    checks = [_supplier_mismatch(document, target.counterparty_id, label=kind)]
    if document.total_amount is not None:
        checks.append(amount_variance(document.total_amount, target.total_amount, label=label))
    if target.document_type == ProcurementDocumentType.VARIATION_ORDER:
        if document.total_amount is None:
            raise ValidationError('Document has no total amount to reconcile')
        po = get_purchase_order(db, po_id=target.linked_purchase_order_id)
        checks.append(_over_billing(db, document, po))
        document.linked_variation_order_id = target.id
    else:
        document.linked_quotation_id = target.id
    warnings = [warning for warning in checks if warning is not None]

    for warning in warnings:
        record_warning(db, document, warning, actor_id=actor_id)
    transition(db, document, Status.LINKED, actor_id=actor_id, reason=f'linked to {label}')
    log_audit(
        db,
        actor_id=actor_id,
        action='DOCUMENT_LINKED',
        document_id=document.id,
        metadata={'target_document_id': target.id, 'warnings': [w.code for w in warnings]},
    )
    logger.info('document %s linked to document %s', document.id, target.id)
    return document, target, warnings


def list_po_linkages(db: Session, *, po_id: int, project_id: int | None = None) -> PurchaseOrderLinkages:
    po = get_purchase_order(db, po_id=po_id, project_id=project_id)
    members = family(db, po)
    linked = db.execute(
        select(ProcurementDocument)
        .where(_family_link_clause([m.id for m in members]))
        .order_by(ProcurementDocument.id.asc())
    ).scalars().all()
    return PurchaseOrderLinkages(
        purchase_order=po,
        revisions=members,
        quotations=[d for d in linked if d.document_type == ProcurementDocumentType.SUPPLIER_QUOTATION],
        invoices=[d for d in linked if d.document_type == ProcurementDocumentType.SUPPLIER_INVOICE],
        variation_orders=[d for d in linked if d.document_type == ProcurementDocumentType.VARIATION_ORDER],
        remaining_unbilled=remaining_unbilled(db, po),
    )
