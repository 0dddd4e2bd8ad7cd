from __future__ import annotations

import logging
import mimetypes
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable

from pydantic import TypeAdapter
from sqlalchemy import delete, exists, inspect, select
from sqlalchemy.orm import Session

from procureflow.config import settings
from procureflow.models import (
    ApprovalStatus,
    DeclaredDocumentType,
    POApprovalRequest,
    ProcurementDocument,
    ProcurementDocumentLineItem,
    ProcurementDocumentStatus as Status,
    ProcurementDocumentType,
    PurchaseOrder,
)
from procureflow.schemas import (
    DocumentDetail,
    DocumentStatusOut,
    ExtractedLineItem,
    ExtractionResult,
    UnclassifiedDetail,
)
from procureflow.services.audit_service import log_audit, record_warning
from procureflow.services.counterparty_service import counterparty_kind_for, get_counterparty, list_candidates
from procureflow.services.document_state import is_terminal, transition
from procureflow.services.document_store import DocumentStore
from procureflow.services.errors import (
    ConflictError,
    ExternalServiceError,
    IntegrityWarning,
    NotFoundError,
    ValidationError,
)
from procureflow.services.extraction_client import JOB_DONE, JOB_ERROR, ExtractionService
from procureflow.services.matching_service import MatchResult, MatchThresholds, match_counterparty, needs_review
from procureflow.services.polling import PollPolicy, is_settled

logger = logging.getLogger(__name__)

ACCEPTED_MIME_TYPES = {
    'application/pdf': ('.pdf',),
    'image/png': ('.png',),
    'image/jpeg': ('.jpg', '.jpeg'),
    'application/msword': ('.doc',),
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document': ('.docx',),
}

# A dependent request in one of these states blocks cancellation.
BLOCKING_REQUEST_STATUSES = (ApprovalStatus.PENDING, ApprovalStatus.APPROVED)
DELETABLE_STATUSES = frozenset({Status.UPLOADED, Status.EXTRACTED, Status.FAILED, Status.CANCELLED})
EDITABLE_STATUSES = frozenset({Status.UPLOADED, Status.EXTRACTED})

_detail_adapter = TypeAdapter(DocumentDetail)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _resolve_mime_type(file_name: str, content_type: str | None) -> str:
    mime = (content_type or '').split(';', 1)[0].strip().lower()
    if mime in ACCEPTED_MIME_TYPES:
        return mime
    guessed, _ = mimetypes.guess_type(file_name)
    if guessed in ACCEPTED_MIME_TYPES:
        return guessed
    allowed = ', '.join(sorted({ext for exts in ACCEPTED_MIME_TYPES.values() for ext in exts}))
    raise ValidationError(f'Unsupported file type. Allowed: {allowed}')


def _parse_declared_type(value: DeclaredDocumentType | str) -> DeclaredDocumentType:
    try:
        return DeclaredDocumentType(value)
    except ValueError as exc:
        raise ValidationError(f'Unknown document type: {value}') from exc


def lock_document(db: Session, *, document_id: int) -> ProcurementDocument:
    db.flush()
    document = db.execute(
        select(ProcurementDocument)
        .where(ProcurementDocument.id == document_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not document:
        raise NotFoundError('Document not found')
    return document


def get_document(db: Session, *, document_id: int, project_id: int | None = None) -> ProcurementDocument:
    document = db.get(ProcurementDocument, document_id)
    if not document or (project_id is not None and document.project_id != project_id):
        raise NotFoundError('Document not found')
    return document


def _adopt_job(db: Session, *, job_id: str, document_id: int) -> int:
    document = lock_document(db, document_id=document_id)
    if document.extraction_job_id is not None and document.extraction_job_id != job_id:
        raise ValidationError('Extraction job does not belong to the given document')
    if document.extraction_job_id is None:
        document.extraction_job_id = job_id
        document.updated_at = _now()
        log_audit(db, actor_id=None, action='EXTRACTION_JOB_ADOPTED', document_id=document.id, metadata={'job_id': job_id})
    return document.id


def find_document_for_job(db: Session, *, job_id: str | None = None, document_id: int | None = None) -> int:
    """Resolve a callback to its document.

    A callback can arrive before the dispatcher has stored the job id. When the job is
    unknown but the callback names the document, the job id is recorded on the spot.
    """
    if job_id:
        found = db.execute(
            select(ProcurementDocument.id).where(ProcurementDocument.extraction_job_id == job_id)
        ).scalar_one_or_none()
        if found is None and document_id is not None:
            return _adopt_job(db, job_id=job_id, document_id=document_id)
        if found is None:
            raise NotFoundError(f'No document for extraction job {job_id}')
        if document_id is not None and found != document_id:
            raise ValidationError('Extraction job does not belong to the given document')
        return found
    if document_id is None:
        raise ValidationError('Callback must identify a job or a document')
    return get_document(db, document_id=document_id).id


def submit_document(
    db: Session,
    store: DocumentStore,
    *,
    project_id: int,
    file_name: str,
    content_type: str | None,
    data: bytes,
    declared_type: DeclaredDocumentType | str,
    notes: str | None = None,
    uploaded_by: int | None = None,
) -> ProcurementDocument:
    """Validate and persist an upload in UPLOADED.

    Nothing is written to the store or the database until the file passed validation.
    The caller schedules ``dispatch_extraction`` once the row is committed.
    """
    file_name = (file_name or '').strip()
    if not file_name:
        raise ValidationError('File name is required')
    if not data:
        raise ValidationError('File is empty')
    if len(data) > settings.max_upload_bytes:
        raise ValidationError(f'File exceeds the {settings.max_upload_bytes // (1024 * 1024)} MB upload limit')
    mime_type = _resolve_mime_type(file_name, content_type)
    declared = _parse_declared_type(declared_type)

    file_key = store.put(data, mime_type)
    document = ProcurementDocument(
        project_id=project_id,
        declared_type=declared,
        document_type=None if declared == DeclaredDocumentType.AUTO else ProcurementDocumentType(declared.value),
        status=Status.UPLOADED,
        file_key=file_key,
        original_file_name=Path(file_name).name,
        mime_type=mime_type,
        file_size=len(data),
        notes=(notes or '').strip() or None,
        uploaded_by=uploaded_by,
        warnings=[],
        created_at=_now(),
        updated_at=_now(),
    )
    db.add(document)
    db.flush()
    log_audit(
        db,
        actor_id=uploaded_by,
        action='DOCUMENT_UPLOADED',
        document_id=document.id,
        metadata={'declared_type': declared.value, 'file_size': len(data), 'mime_type': mime_type},
    )
    logger.info('document %s uploaded to project %s as %s', document.id, project_id, declared.value)
    return document


def dispatch_extraction(
    document_id: int,
    *,
    extraction_service: ExtractionService,
    session_factory: Callable[[], Session] | None = None,
) -> None:
    """Submit the extraction job for an uploaded document. Runs after the upload response."""
    if session_factory is None:
        from procureflow.db import SessionLocal

        session_factory = SessionLocal

    with session_factory() as db:
        document = get_document(db, document_id=document_id)
        if document.status != Status.UPLOADED or document.extraction_job_id:
            logger.info('document %s no longer awaiting dispatch (%s)', document_id, document.status.value)
            return
        document_key, declared_type = document.file_key, document.declared_type
        # No transaction is held open across the submit call.
        db.rollback()
        try:
            job_id = extraction_service.submit_job(
                document_key=document_key,
                declared_type=declared_type,
                document_id=document_id,
            )
        except ExternalServiceError as exc:
            logger.error('extraction submit failed for document %s: %s', document_id, exc)
            on_extraction_failed(db, document_id=document_id, reason=f'submit failed: {exc}')
            db.commit()
            return

        # A callback naming this document may have recorded the job id already.
        document = lock_document(db, document_id=document_id)
        if document.extraction_job_id is None:
            document.extraction_job_id = job_id
            document.updated_at = _now()
        elif document.extraction_job_id != job_id:
            logger.warning(
                'document %s already tracks job %s; ignoring job %s', document_id, document.extraction_job_id, job_id
            )
        log_audit(db, actor_id=None, action='EXTRACTION_SUBMITTED', document_id=document_id, metadata={'job_id': job_id})
        db.commit()


def check_line_items(
    total_amount: Decimal | None,
    tax_amount: Decimal | None,
    line_items: list[ExtractedLineItem],
    *,
    tolerance: Decimal | None = None,
) -> IntegrityWarning | None:
    if total_amount is None or tax_amount is None or not line_items:
        return None
    tolerance = settings.amount_rounding_tolerance if tolerance is None else tolerance
    expected = total_amount - tax_amount
    line_sum = sum((item.amount for item in line_items), Decimal('0'))
    if abs(line_sum - expected) <= tolerance:
        return None
    return IntegrityWarning(
        code='LINE_ITEMS_TOTAL_MISMATCH',
        message='Line items do not sum to the total less tax',
        details={'line_items_sum': str(line_sum), 'expected': str(expected)},
    )


def _replace_line_items(db: Session, document: ProcurementDocument, line_items: list[ExtractedLineItem]) -> None:
    db.execute(delete(ProcurementDocumentLineItem).where(ProcurementDocumentLineItem.document_id == document.id))
    for idx, item in enumerate(line_items, start=1):
        db.add(
            ProcurementDocumentLineItem(
                document_id=document.id,
                line_number=idx,
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                unit=item.unit,
                amount=item.amount,
            )
        )


def _apply_match(document: ProcurementDocument, match: MatchResult) -> None:
    document.counterparty_id = match.counterparty_id
    document.counterparty_match_confidence = match.confidence
    document.counterparty_needs_review = needs_review(match.confidence)


def resolve_counterparty(db: Session, document: ProcurementDocument) -> MatchResult:
    candidates = list_candidates(
        db,
        project_id=document.project_id,
        kind=counterparty_kind_for(document.document_type),
    )
    thresholds = MatchThresholds(medium=settings.match_medium_threshold, low=settings.match_low_floor)
    match = match_counterparty(document.counterparty_name_extracted, candidates, thresholds)
    _apply_match(document, match)
    return match


def _fail(db: Session, document: ProcurementDocument, *, reason: str, actor_id: int | None = None) -> None:
    document.failure_reason = reason
    transition(db, document, Status.FAILED, actor_id=actor_id, reason=reason)
    logger.warning('document %s failed extraction: %s', document.id, reason)


def on_extraction_complete(
    db: Session,
    *,
    document_id: int,
    result: ExtractionResult,
    actor_id: int | None = None,
) -> ProcurementDocument:
    document = lock_document(db, document_id=document_id)
    payload_hash = result.payload_hash()

    if document.status == Status.CANCELLED:
        log_audit(
            db,
            actor_id=actor_id,
            action='EXTRACTION_COMPLETED_AFTER_CANCEL',
            document_id=document.id,
            metadata={'payload_hash': payload_hash},
        )
        logger.info('late extraction result for cancelled document %s recorded', document.id)
        return document

    if document.extraction_payload_hash is not None:
        if document.extraction_payload_hash != payload_hash:
            raise ConflictError(f'Document {document.id} was already extracted with a different result')
        log_audit(
            db,
            actor_id=actor_id,
            action='EXTRACTION_DUPLICATE_IGNORED',
            document_id=document.id,
            metadata={'payload_hash': payload_hash},
        )
        return document

    if document.status != Status.UPLOADED:
        raise ConflictError(f'Document {document.id} cannot accept extraction results in {document.status.value}')

    if document.declared_type == DeclaredDocumentType.AUTO:
        if result.inferred_type is None:
            _fail(db, document, reason='document type could not be inferred', actor_id=actor_id)
            return document
        document.document_type = result.inferred_type
    elif result.inferred_type is not None and result.inferred_type.value != document.declared_type.value:
        record_warning(
            db,
            document,
            IntegrityWarning(
                code='DECLARED_TYPE_MISMATCH',
                message='Extraction classified the document differently from the declared type',
                details={'declared': document.declared_type.value, 'inferred': result.inferred_type.value},
            ),
            actor_id=actor_id,
        )

    document.document_number = result.document_number
    document.document_date = result.document_date
    document.due_date = result.due_date
    document.total_amount = result.total_amount
    document.tax_amount = result.tax_amount
    document.currency = result.currency or settings.default_currency
    document.payment_terms = result.payment_terms
    document.terms_and_conditions = result.terms_and_conditions
    document.counterparty_name_extracted = result.counterparty_name
    document.extraction_confidence = result.confidence
    document.extracted_data = result.canonical_payload()
    document.extraction_payload_hash = payload_hash
    document.extracted_at = _now()
    _replace_line_items(db, document, result.line_items)

    warning = check_line_items(result.total_amount, result.tax_amount, result.line_items)
    if warning:
        record_warning(db, document, warning, actor_id=actor_id)

    match = resolve_counterparty(db, document)
    transition(db, document, Status.EXTRACTED, actor_id=actor_id, reason='extraction completed')
    log_audit(
        db,
        actor_id=actor_id,
        action='EXTRACTION_COMPLETED',
        document_id=document.id,
        metadata={
            'payload_hash': payload_hash,
            'confidence': str(result.confidence),
            'match_confidence': match.confidence.value,
        },
    )
    logger.info(
        'document %s extracted (confidence %s, counterparty match %s)',
        document.id,
        result.confidence,
        match.confidence.value,
    )
    return document


def on_extraction_failed(
    db: Session,
    *,
    document_id: int,
    reason: str,
    actor_id: int | None = None,
) -> ProcurementDocument:
    document = lock_document(db, document_id=document_id)
    reason = (reason or '').strip() or 'extraction failed'
    if document.status == Status.CANCELLED:
        log_audit(
            db,
            actor_id=actor_id,
            action='EXTRACTION_FAILED_AFTER_CANCEL',
            document_id=document.id,
            metadata={'reason': reason},
        )
        return document
    if document.status == Status.FAILED:
        return document
    _fail(db, document, reason=reason, actor_id=actor_id)
    return document


def poll_status(
    db: Session,
    *,
    document_id: int,
    project_id: int | None = None,
    attempt: int = 0,
    policy: PollPolicy | None = None,
) -> DocumentStatusOut:
    document = get_document(db, document_id=document_id, project_id=project_id)
    policy = policy or PollPolicy.from_settings()
    settled = is_settled(document.status)
    delay = None if settled else policy.next_delay(attempt)
    return DocumentStatusOut(
        document_id=document.id,
        status=document.status,
        extraction_confidence=document.extraction_confidence,
        settled=settled,
        next_poll_after_seconds=delay,
        give_up=not settled and delay is None,
    )


def _has_blocking_request(db: Session, document_id: int) -> bool:
    return db.execute(
        select(
            exists().where(
                POApprovalRequest.document_id == document_id,
                POApprovalRequest.status.in_(BLOCKING_REQUEST_STATUSES),
            )
        )
    ).scalar()


def cancel_document(
    db: Session,
    *,
    document_id: int,
    actor_id: int | None,
    reason: str | None = None,
) -> ProcurementDocument:
    document = lock_document(db, document_id=document_id)
    if is_terminal(document.status):
        raise ConflictError(f'Document {document.id} is already {document.status.value}')
    if _has_blocking_request(db, document.id):
        raise ConflictError('Document has a pending or approved PO request; resolve it before cancelling')
    transition(db, document, Status.CANCELLED, actor_id=actor_id, reason=reason or 'cancelled')
    return document


def retry_failed_document(
    db: Session,
    store: DocumentStore,
    *,
    document_id: int,
    actor_id: int | None,
) -> ProcurementDocument:
    """Re-upload a FAILED document's file as a brand new document; the failed row stays as it is."""
    failed = lock_document(db, document_id=document_id)
    if failed.status != Status.FAILED:
        raise ConflictError('Only failed documents can be retried')

    file_key = store.put(store.get(failed.file_key), failed.mime_type)
    document = ProcurementDocument(
        project_id=failed.project_id,
        declared_type=failed.declared_type,
        document_type=None if failed.declared_type == DeclaredDocumentType.AUTO else failed.document_type,
        status=Status.UPLOADED,
        file_key=file_key,
        original_file_name=failed.original_file_name,
        mime_type=failed.mime_type,
        file_size=failed.file_size,
        notes=failed.notes,
        uploaded_by=actor_id,
        retried_from_id=failed.id,
        warnings=[],
        created_at=_now(),
        updated_at=_now(),
    )
    db.add(document)
    db.flush()
    log_audit(
        db,
        actor_id=actor_id,
        action='DOCUMENT_RETRIED',
        document_id=document.id,
        metadata={'retried_from_id': failed.id},
    )
    return document


def expire_stale_extractions(
    db: Session,
    *,
    now: datetime | None = None,
    deadline_minutes: int | None = None,
) -> list[int]:
    deadline_minutes = deadline_minutes or settings.extraction_deadline_minutes
    cutoff = (now or _now()) - timedelta(minutes=deadline_minutes)
    stale_ids = db.execute(
        select(ProcurementDocument.id)
        .where(ProcurementDocument.status == Status.UPLOADED, ProcurementDocument.created_at < cutoff)
        .order_by(ProcurementDocument.id.asc())
    ).scalars().all()
    for document_id in stale_ids:
        on_extraction_failed(db, document_id=document_id, reason='timeout')
    return list(stale_ids)


def sync_extraction_jobs(
    db: Session,
    *,
    extraction_service: ExtractionService,
    limit: int = 100,
) -> dict[str, int]:
    """Fetch job state for in-flight documents whose completion callback never arrived.

    Commits after each document so one bad job does not hold back the rest.
    """
    counts = {'completed': 0, 'failed': 0, 'pending': 0, 'errors': 0}
    rows = db.execute(
        select(ProcurementDocument.id, ProcurementDocument.extraction_job_id)
        .where(
            ProcurementDocument.status == Status.UPLOADED,
            ProcurementDocument.extraction_job_id.is_not(None),
        )
        .order_by(ProcurementDocument.id.asc())
        .limit(limit)
    ).all()

    for document_id, job_id in rows:
        try:
            state = extraction_service.fetch_job(job_id)
            if state.status == JOB_DONE and state.result is not None:
                on_extraction_complete(db, document_id=document_id, result=state.result)
                counts['completed'] += 1
            elif state.status == JOB_ERROR:
                on_extraction_failed(db, document_id=document_id, reason=state.error or 'extraction failed')
                counts['failed'] += 1
            else:
                counts['pending'] += 1
                continue
            db.commit()
        except (ExternalServiceError, ConflictError) as exc:
            db.rollback()
            logger.warning('extraction sync for document %s skipped: %s', document_id, exc)
            counts['errors'] += 1
    return counts


def update_document_fields(
    db: Session,
    *,
    document_id: int,
    fields: dict,
    actor_id: int | None,
) -> ProcurementDocument:
    document = lock_document(db, document_id=document_id)
    if document.status not in EDITABLE_STATUSES:
        raise ConflictError(f'Document fields cannot be edited in {document.status.value}')

    total = fields.get('total_amount', document.total_amount)
    tax = fields.get('tax_amount', document.tax_amount)
    for label, value in (('Total amount', total), ('Tax amount', tax)):
        if value is not None and value < 0:
            raise ValidationError(f'{label} cannot be negative')
    if total is not None and tax is not None and tax > total:
        raise ValidationError('Tax amount cannot exceed total amount')

    changed = []
    for key, value in fields.items():
        if getattr(document, key) != value:
            setattr(document, key, value)
            changed.append(key)
    if not changed:
        return document

    document.updated_at = _now()
    log_audit(
        db,
        actor_id=actor_id,
        action='DOCUMENT_FIELDS_UPDATED',
        document_id=document.id,
        metadata={'fields': sorted(changed)},
    )
    return document


def assign_counterparty(
    db: Session,
    *,
    document_id: int,
    counterparty_id: int,
    actor_id: int | None,
) -> ProcurementDocument:
    document = lock_document(db, document_id=document_id)
    if document.status not in EDITABLE_STATUSES:
        raise ConflictError(f'Counterparty cannot be changed in {document.status.value}')
    counterparty = get_counterparty(db, counterparty_id=counterparty_id, project_id=document.project_id)
    expected_kind = counterparty_kind_for(document.document_type)
    if counterparty.kind != expected_kind:
        raise ValidationError(f'Expected a {expected_kind.value.lower()} for this document')

    previous = document.counterparty_id
    document.counterparty_id = counterparty.id
    document.counterparty_needs_review = False
    document.updated_at = _now()
    log_audit(
        db,
        actor_id=actor_id,
        action='COUNTERPARTY_ASSIGNED',
        document_id=document.id,
        metadata={'previous': previous, 'counterparty_id': counterparty.id},
    )
    return document


def mark_paid(db: Session, *, document_id: int, actor_id: int | None) -> ProcurementDocument:
    document = lock_document(db, document_id=document_id)
    transition(db, document, Status.PAID, actor_id=actor_id, reason='marked paid')
    return document


def delete_document(
    db: Session,
    store: DocumentStore,
    *,
    document_id: int,
    actor_id: int | None,
) -> None:
    document = lock_document(db, document_id=document_id)
    if document.status not in DELETABLE_STATUSES:
        raise ConflictError(f'Documents in {document.status.value} cannot be deleted')
    if document.linked_purchase_order_id is not None:
        raise ConflictError('Document is linked to a purchase order')
    has_requests = db.execute(select(exists().where(POApprovalRequest.document_id == document.id))).scalar()
    has_po = db.execute(select(exists().where(PurchaseOrder.source_document_id == document.id))).scalar()
    if has_requests or has_po:
        raise ConflictError('Document is referenced by a PO request or purchase order')

    file_key = document.file_key
    audit_meta = {'file_name': document.original_file_name, 'status': document.status.value}
    db.execute(delete(ProcurementDocumentLineItem).where(ProcurementDocumentLineItem.document_id == document.id))
    db.delete(document)
    db.flush()
    log_audit(
        db,
        actor_id=actor_id,
        action='DOCUMENT_DELETED',
        document_id=document_id,
        metadata=audit_meta,
    )
    store.delete(file_key)


def list_documents(
    db: Session,
    *,
    project_id: int,
    status: Status | None = None,
    document_type: ProcurementDocumentType | None = None,
    needs_review: bool | None = None,
) -> list[ProcurementDocument]:
    query = select(ProcurementDocument).where(ProcurementDocument.project_id == project_id)
    if status is not None:
        query = query.where(ProcurementDocument.status == status)
    if document_type is not None:
        query = query.where(ProcurementDocument.document_type == document_type)
    if needs_review is not None:
        query = query.where(ProcurementDocument.counterparty_needs_review.is_(needs_review))
    return db.execute(query.order_by(ProcurementDocument.created_at.desc(), ProcurementDocument.id.desc())).scalars().all()


def list_line_items(db: Session, *, document_id: int) -> list[ProcurementDocumentLineItem]:
    return db.execute(
        select(ProcurementDocumentLineItem)
        .where(ProcurementDocumentLineItem.document_id == document_id)
        .order_by(ProcurementDocumentLineItem.line_number.asc())
    ).scalars().all()


def get_document_detail(db: Session, *, document_id: int, project_id: int | None = None):
    document = get_document(db, document_id=document_id, project_id=project_id)
    data = {attr.key: getattr(document, attr.key) for attr in inspect(ProcurementDocument).column_attrs}
    data['warnings'] = list(document.warnings or [])
    data['line_items'] = [
        {
            'line_number': row.line_number,
            'description': row.description,
            'quantity': row.quantity,
            'unit_price': row.unit_price,
            'unit': row.unit,
            'amount': row.amount,
        }
        for row in list_line_items(db, document_id=document.id)
    ]
    if document.document_type is None:
        return UnclassifiedDetail.model_validate(data)
    if document.document_type == ProcurementDocumentType.VARIATION_ORDER:
        data['revised_purchase_order_id'] = db.execute(
            select(PurchaseOrder.id).where(PurchaseOrder.source_document_id == document.id)
        ).scalar_one_or_none()
    return _detail_adapter.validate_python(data)
