from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from sqlalchemy.orm import Session

from procureflow.config import settings
from procureflow.db import get_db
from procureflow.dependencies import get_actor_id, get_client_ip
from procureflow.models import (
    ApprovalStatus,
    ProcurementDocument,
    ProcurementDocumentStatus,
    ProcurementDocumentType,
    PurchaseOrder,
)
from procureflow.schemas import (
    CounterpartyAssignment,
    DecisionIn,
    DocumentFieldsUpdate,
    DocumentLinkageIn,
    DocumentStatusOut,
    ExtractionCallback,
    LinkageIn,
    PORequestCreate,
    PORequestOut,
    PurchaseOrderOut,
)
from procureflow.services.audit_service import log_audit
from procureflow.services.document_lifecycle_service import (
    assign_counterparty,
    cancel_document,
    delete_document,
    dispatch_extraction,
    find_document_for_job,
    get_document,
    get_document_detail,
    list_documents,
    mark_paid,
    on_extraction_complete,
    on_extraction_failed,
    poll_status,
    retry_failed_document,
    submit_document,
    update_document_fields,
)
from procureflow.services.errors import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from procureflow.services.po_approval_service import decide_po_request, get_po_request, list_po_requests, request_po_generation
from procureflow.services.provider_factory import get_document_store, get_extraction_service, get_po_renderer
from procureflow.services.reconciliation_service import (
    confirm_document_linkage,
    confirm_linkage,
    get_purchase_order,
    list_po_linkages,
    propose_linkage,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/projects/{project_id}/procurement', tags=['procurement'])
callback_router = APIRouter(prefix='/procurement', tags=['procurement'])


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ExternalServiceError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _document_summary(document: ProcurementDocument) -> dict:
    return {
        'id': document.id,
        'project_id': document.project_id,
        'document_type': document.document_type,
        'declared_type': document.declared_type,
        'status': document.status,
        'original_file_name': document.original_file_name,
        'document_number': document.document_number,
        'total_amount': document.total_amount,
        'currency': document.currency,
        'counterparty_id': document.counterparty_id,
        'counterparty_match_confidence': document.counterparty_match_confidence,
        'counterparty_needs_review': document.counterparty_needs_review,
        'extraction_confidence': document.extraction_confidence,
        'linked_purchase_order_id': document.linked_purchase_order_id,
        'linked_quotation_id': document.linked_quotation_id,
        'linked_variation_order_id': document.linked_variation_order_id,
        'over_billed': document.over_billed,
        'warning_count': len(document.warnings or []),
        'retried_from_id': document.retried_from_id,
        'created_at': document.created_at,
    }


def _project_document(db: Session, project_id: int, document_id: int) -> ProcurementDocument:
    try:
        return get_document(db, document_id=document_id, project_id=project_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@router.post('/documents', status_code=status.HTTP_201_CREATED)
def upload_document(
    project_id: int,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    declared_type: str = Form('AUTO'),
    notes: str | None = Form(None),
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    # One byte over the ceiling is enough to reject.
    data = file.file.read(settings.max_upload_bytes + 1)
    try:
        document = submit_document(
            db,
            get_document_store(),
            project_id=project_id,
            file_name=file.filename or '',
            content_type=file.content_type,
            data=data,
            declared_type=declared_type.strip().upper(),
            notes=notes,
            uploaded_by=actor_id,
        )
    except (ValueError, ExternalServiceError) as exc:
        raise _http_error(exc) from exc
    db.commit()

    background_tasks.add_task(dispatch_extraction, document.id, extraction_service=get_extraction_service())
    return _document_summary(document)


@router.get('/documents')
def documents_index(
    project_id: int,
    status_filter: ProcurementDocumentStatus | None = Query(None, alias='status'),
    document_type: ProcurementDocumentType | None = None,
    needs_review: bool | None = None,
    db: Session = Depends(get_db),
):
    rows = list_documents(
        db,
        project_id=project_id,
        status=status_filter,
        document_type=document_type,
        needs_review=needs_review,
    )
    return [_document_summary(row) for row in rows]


@router.get('/documents/{document_id}')
def document_detail(project_id: int, document_id: int, db: Session = Depends(get_db)):
    try:
        return get_document_detail(db, document_id=document_id, project_id=project_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@router.get('/documents/{document_id}/status', response_model=DocumentStatusOut)
def document_status(project_id: int, document_id: int, attempt: int = 0, db: Session = Depends(get_db)):
    try:
        return poll_status(db, document_id=document_id, project_id=project_id, attempt=attempt)
    except ValueError as exc:
        raise _http_error(exc) from exc


@router.post('/documents/{document_id}/cancel')
def document_cancel(
    project_id: int,
    document_id: int,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    _project_document(db, project_id, document_id)
    try:
        document = cancel_document(db, document_id=document_id, actor_id=actor_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    db.commit()
    return _document_summary(document)


@router.post('/documents/{document_id}/retry', status_code=status.HTTP_201_CREATED)
def document_retry(
    project_id: int,
    document_id: int,
    background_tasks: BackgroundTasks,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    _project_document(db, project_id, document_id)
    try:
        document = retry_failed_document(db, get_document_store(), document_id=document_id, actor_id=actor_id)
    except (ValueError, ExternalServiceError) as exc:
        raise _http_error(exc) from exc
    db.commit()

    background_tasks.add_task(dispatch_extraction, document.id, extraction_service=get_extraction_service())
    return _document_summary(document)


@router.post('/documents/{document_id}/paid')
def document_paid(
    project_id: int,
    document_id: int,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    _project_document(db, project_id, document_id)
    try:
        document = mark_paid(db, document_id=document_id, actor_id=actor_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    db.commit()
    return _document_summary(document)


@router.patch('/documents/{document_id}')
def document_update(
    project_id: int,
    document_id: int,
    payload: DocumentFieldsUpdate,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    _project_document(db, project_id, document_id)
    try:
        document = update_document_fields(
            db,
            document_id=document_id,
            fields=payload.model_dump(exclude_unset=True),
            actor_id=actor_id,
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    db.commit()
    return _document_summary(document)


@router.put('/documents/{document_id}/counterparty')
def document_counterparty(
    project_id: int,
    document_id: int,
    payload: CounterpartyAssignment,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    _project_document(db, project_id, document_id)
    try:
        document = assign_counterparty(
            db,
            document_id=document_id,
            counterparty_id=payload.counterparty_id,
            actor_id=actor_id,
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    db.commit()
    return _document_summary(document)


@router.delete('/documents/{document_id}', status_code=status.HTTP_204_NO_CONTENT)
def document_delete(
    project_id: int,
    document_id: int,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    _project_document(db, project_id, document_id)
    try:
        delete_document(db, get_document_store(), document_id=document_id, actor_id=actor_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    db.commit()


@router.post('/po-requests', response_model=PORequestOut, status_code=status.HTTP_201_CREATED)
def po_request_create(
    project_id: int,
    payload: PORequestCreate,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    _project_document(db, project_id, payload.quotation_document_id)
    try:
        request = request_po_generation(
            db,
            document_id=payload.quotation_document_id,
            terms=payload.terms,
            actor_id=actor_id,
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    db.commit()
    return request


@router.get('/po-requests', response_model=list[PORequestOut])
def po_requests_index(
    project_id: int,
    status_filter: ApprovalStatus | None = Query(None, alias='status'),
    db: Session = Depends(get_db),
):
    return list_po_requests(db, project_id=project_id, status=status_filter)


@router.post('/po-requests/{request_id}/decision', response_model=PORequestOut)
def po_request_decide(
    project_id: int,
    request_id: int,
    payload: DecisionIn,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    try:
        get_po_request(db, request_id=request_id, project_id=project_id)
        # Commits its own steps.
        return decide_po_request(
            db,
            get_po_renderer(),
            request_id=request_id,
            decision=payload.decision,
            actor_id=actor_id,
            comments=payload.comments,
        )
    except (ValueError, ExternalServiceError) as exc:
        db.rollback()
        raise _http_error(exc) from exc


@router.get('/documents/{document_id}/linkage-proposals')
def linkage_proposals(project_id: int, document_id: int, db: Session = Depends(get_db)):
    _project_document(db, project_id, document_id)
    try:
        proposals = propose_linkage(db, document_id=document_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return [
        {
            'po_id': p.po_id,
            'po_number': p.po_number,
            'amount_delta_pct': p.amount_delta_pct,
            'supplier_matches': p.supplier_matches,
            'remaining_unbilled': p.remaining_unbilled,
        }
        for p in proposals
    ]


@router.post('/documents/{document_id}/linkage')
def linkage_confirm(
    project_id: int,
    document_id: int,
    payload: LinkageIn,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    _project_document(db, project_id, document_id)
    try:
        outcome = confirm_linkage(
            db,
            get_po_renderer(),
            document_id=document_id,
            po_id=payload.purchase_order_id,
            actor_id=actor_id,
        )
    except (ValueError, ExternalServiceError) as exc:
        db.rollback()
        raise _http_error(exc) from exc
    db.commit()
    return {
        'document': _document_summary(outcome.document),
        'purchase_order_id': outcome.purchase_order.id,
        'revision': PurchaseOrderOut.model_validate(outcome.revision) if outcome.revision else None,
        'warnings': [w.as_dict() for w in outcome.warnings],
    }


@router.post('/documents/{document_id}/document-linkage')
def document_linkage_confirm(
    project_id: int,
    document_id: int,
    payload: DocumentLinkageIn,
    actor_id: int = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    _project_document(db, project_id, document_id)
    try:
        document, target, warnings = confirm_document_linkage(
            db,
            document_id=document_id,
            target_document_id=payload.target_document_id,
            actor_id=actor_id,
        )
    except ValueError as exc:
        db.rollback()
        raise _http_error(exc) from exc
    db.commit()
    return {
        'document': _document_summary(document),
        'target_document_id': target.id,
        'warnings': [w.as_dict() for w in warnings],
    }


@router.get('/purchase-orders/{po_id}', response_model=PurchaseOrderOut)
def purchase_order_detail(project_id: int, po_id: int, db: Session = Depends(get_db)):
    try:
        return get_purchase_order(db, po_id=po_id, project_id=project_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@router.get('/purchase-orders/{po_id}/linkages')
def purchase_order_linkages(project_id: int, po_id: int, db: Session = Depends(get_db)):
    try:
        linkages = list_po_linkages(db, po_id=po_id, project_id=project_id)
    except ValueError as exc:
        raise _http_error(exc) from exc

    def _po(row: PurchaseOrder) -> dict:
        return {'id': row.id, 'po_number': row.po_number, 'revision_number': row.revision_number, 'total_amount': row.total_amount}

    return {
        'purchase_order': _po(linkages.purchase_order),
        'revisions': [_po(row) for row in linkages.revisions],
        'quotations': [_document_summary(row) for row in linkages.quotations],
        'invoices': [_document_summary(row) for row in linkages.invoices],
        'variation_orders': [_document_summary(row) for row in linkages.variation_orders],
        'remaining_unbilled': linkages.remaining_unbilled,
    }


@callback_router.post('/extraction-callback')
def extraction_callback(payload: ExtractionCallback, request: Request, db: Session = Depends(get_db)):
    try:
        document_id = find_document_for_job(db, job_id=payload.job_id, document_id=payload.document_id)
        log_audit(
            db,
            actor_id=None,
            action='EXTRACTION_CALLBACK_RECEIVED',
            document_id=document_id,
            ip=get_client_ip(request),
            metadata={'job_id': payload.job_id, 'status': payload.status},
        )
        if payload.status == 'DONE':
            if payload.result is None:
                raise ValidationError('DONE callback is missing the extraction result')
            document = on_extraction_complete(db, document_id=document_id, result=payload.result)
        elif payload.status == 'ERROR':
            document = on_extraction_failed(db, document_id=document_id, reason=payload.error or 'extraction failed')
        else:
            document = get_document(db, document_id=document_id)
    except ValueError as exc:
        db.rollback()
        raise _http_error(exc) from exc
    db.commit()
    logger.info('extraction callback for document %s (%s)', document_id, payload.status)
    return {'document_id': document.id, 'status': document.status}
