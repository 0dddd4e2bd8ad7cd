from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from procureflow.models import (
    Base,
    Counterparty,
    CounterpartyKind,
    DeclaredDocumentType,
    ProcurementDocument,
    ProcurementDocumentStatus,
    ProcurementDocumentType,
)
from procureflow.schemas import ExtractedLineItem, ExtractionResult
from procureflow.services.errors import ExternalServiceError


def make_session_factory(url: str = 'sqlite://', **engine_kwargs):
    if url == 'sqlite://':
        engine_kwargs.setdefault('connect_args', {'check_same_thread': False})
        engine_kwargs.setdefault('poolclass', StaticPool)
    engine = create_engine(url, **engine_kwargs)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def add_counterparty(db, name: str, *, kind=CounterpartyKind.SUPPLIER, project_id=None, active=True) -> Counterparty:
    row = Counterparty(kind=kind, name=name, project_id=project_id, active=active)
    db.add(row)
    db.flush()
    return row


def add_document(
    db,
    *,
    project_id: int = 1,
    document_type: ProcurementDocumentType | None = ProcurementDocumentType.SUPPLIER_QUOTATION,
    declared_type: DeclaredDocumentType | None = None,
    status: ProcurementDocumentStatus = ProcurementDocumentStatus.EXTRACTED,
    total_amount=None,
    tax_amount=None,
    counterparty_id: int | None = None,
    document_number: str | None = None,
    payment_terms: str | None = None,
    created_at: datetime | None = None,
) -> ProcurementDocument:
    if declared_type is None:
        declared_type = DeclaredDocumentType(document_type.value) if document_type else DeclaredDocumentType.AUTO
    now = created_at or datetime.now(tz=timezone.utc)
    document = ProcurementDocument(
        project_id=project_id,
        document_type=document_type,
        declared_type=declared_type,
        status=status,
        file_key='test-key.pdf',
        original_file_name='document.pdf',
        mime_type='application/pdf',
        file_size=128,
        total_amount=Decimal(str(total_amount)) if total_amount is not None else None,
        tax_amount=Decimal(str(tax_amount)) if tax_amount is not None else None,
        currency='SGD',
        counterparty_id=counterparty_id,
        document_number=document_number,
        payment_terms=payment_terms,
        warnings=[],
        created_at=now,
        updated_at=now,
    )
    db.add(document)
    db.flush()
    return document


def make_result(**overrides) -> ExtractionResult:
    values = {
        'document_number': 'Q-1001',
        'total_amount': Decimal('10700.00'),
        'tax_amount': Decimal('700.00'),
        'currency': 'SGD',
        'counterparty_name': 'ABC Pte Ltd',
        'payment_terms': 'NET_30',
        'line_items': [
            ExtractedLineItem(description='Steel beams', quantity=Decimal('20'), unit_price=Decimal('300.00'), amount=Decimal('6000.00')),
            ExtractedLineItem(description='Installation', amount=Decimal('4000.00')),
        ],
        'confidence': Decimal('95'),
        'inferred_type': ProcurementDocumentType.SUPPLIER_QUOTATION,
    }
    values.update(overrides)
    return ExtractionResult(**values)


class RecordingRenderer:
    def __init__(self, *, failures: int = 0) -> None:
        self.calls: list[dict] = []
        self.failures = failures

    def render(self, snapshot: dict) -> str:
        self.calls.append(snapshot)
        if self.failures > 0:
            self.failures -= 1
            raise ExternalServiceError('renderer unavailable')
        return f"artifact-{snapshot['po_number']}.html"
