from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntId = BigInteger().with_variant(Integer(), 'sqlite')


class Base(DeclarativeBase):
    pass


class ProcurementDocumentType(str, Enum):
    CUSTOMER_PO = 'CUSTOMER_PO'
    SUPPLIER_QUOTATION = 'SUPPLIER_QUOTATION'
    SUPPLIER_INVOICE = 'SUPPLIER_INVOICE'
    SUPPLIER_PO = 'SUPPLIER_PO'
    CLIENT_INVOICE = 'CLIENT_INVOICE'
    VARIATION_ORDER = 'VARIATION_ORDER'


class DeclaredDocumentType(str, Enum):
    AUTO = 'AUTO'
    CUSTOMER_PO = 'CUSTOMER_PO'
    SUPPLIER_QUOTATION = 'SUPPLIER_QUOTATION'
    SUPPLIER_INVOICE = 'SUPPLIER_INVOICE'
    SUPPLIER_PO = 'SUPPLIER_PO'
    CLIENT_INVOICE = 'CLIENT_INVOICE'
    VARIATION_ORDER = 'VARIATION_ORDER'


class ProcurementDocumentStatus(str, Enum):
    UPLOADED = 'UPLOADED'
    EXTRACTED = 'EXTRACTED'
    FAILED = 'FAILED'
    PENDING_APPROVAL = 'PENDING_APPROVAL'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'
    LINKED = 'LINKED'
    PAID = 'PAID'
    CANCELLED = 'CANCELLED'


class MatchConfidence(str, Enum):
    EXACT = 'EXACT'
    HIGH = 'HIGH'
    MEDIUM = 'MEDIUM'
    LOW = 'LOW'
    NONE = 'NONE'


class CounterpartyKind(str, Enum):
    SUPPLIER = 'SUPPLIER'
    CUSTOMER = 'CUSTOMER'


class ApprovalStatus(str, Enum):
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'


class PaymentTerms(str, Enum):
    NET_7 = 'NET_7'
    NET_15 = 'NET_15'
    NET_30 = 'NET_30'
    NET_45 = 'NET_45'
    NET_60 = 'NET_60'
    NET_90 = 'NET_90'
    IMMEDIATE = 'IMMEDIATE'
    CUSTOM = 'CUSTOM'


class Counterparty(Base):
    __tablename__ = 'counterparties'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    kind: Mapped[CounterpartyKind] = mapped_column(SQLEnum(CounterpartyKind, name='counterparty_kind'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    project_id: Mapped[int | None] = mapped_column(BigInteger)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProcurementDocument(Base):
    __tablename__ = 'procurement_documents'
    __table_args__ = (
        Index('procurement_documents_project_status_idx', 'project_id', 'status'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    project_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    document_type: Mapped[ProcurementDocumentType | None] = mapped_column(
        SQLEnum(ProcurementDocumentType, name='procurement_document_type')
    )
    declared_type: Mapped[DeclaredDocumentType] = mapped_column(
        SQLEnum(DeclaredDocumentType, name='declared_document_type'), nullable=False
    )
    status: Mapped[ProcurementDocumentStatus] = mapped_column(
        SQLEnum(ProcurementDocumentStatus, name='procurement_document_status'),
        nullable=False,
        default=ProcurementDocumentStatus.UPLOADED,
        server_default='UPLOADED',
    )

    file_key: Mapped[str] = mapped_column(Text, nullable=False)
    original_file_name: Mapped[str] = mapped_column(Text, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(128), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)

    extraction_job_id: Mapped[str | None] = mapped_column(Text)
    extraction_confidence: Mapped[Decimal | None] = mapped_column(Numeric(5, 2))
    extracted_data: Mapped[dict | None] = mapped_column(JSON)
    extraction_payload_hash: Mapped[str | None] = mapped_column(String(64))
    extracted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failure_reason: Mapped[str | None] = mapped_column(Text)

    document_number: Mapped[str | None] = mapped_column(Text, index=True)
    document_date: Mapped[date | None] = mapped_column(Date)
    due_date: Mapped[date | None] = mapped_column(Date)
    total_amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2))
    tax_amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2))
    currency: Mapped[str | None] = mapped_column(String(8))
    payment_terms: Mapped[str | None] = mapped_column(Text)
    terms_and_conditions: Mapped[str | None] = mapped_column(Text)

    counterparty_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('counterparties.id', ondelete='SET NULL'))
    counterparty_name_extracted: Mapped[str | None] = mapped_column(Text)
    counterparty_match_confidence: Mapped[MatchConfidence | None] = mapped_column(
        SQLEnum(MatchConfidence, name='match_confidence')
    )
    counterparty_needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')

    linked_purchase_order_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey('purchase_orders.id', ondelete='SET NULL', use_alter=True, name='procurement_documents_linked_po_fkey'),
        index=True,
    )
    linked_quotation_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('procurement_documents.id', ondelete='SET NULL'))
    linked_variation_order_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey('procurement_documents.id', ondelete='SET NULL')
    )
    over_billed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    warnings: Mapped[list] = mapped_column(JSON, nullable=False, default=list, server_default='[]')

    retried_from_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('procurement_documents.id', ondelete='SET NULL'))
    notes: Mapped[str | None] = mapped_column(Text)
    uploaded_by: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProcurementDocumentLineItem(Base):
    __tablename__ = 'procurement_document_line_items'
    __table_args__ = (
        UniqueConstraint('document_id', 'line_number', name='procurement_document_line_items_document_line_uniq'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    document_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('procurement_documents.id', ondelete='CASCADE'), nullable=False
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Decimal | None] = mapped_column(Numeric(12, 3))
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(15, 2))
    unit: Mapped[str | None] = mapped_column(Text)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)


class POApprovalRequest(Base):
    __tablename__ = 'po_approval_requests'
    __table_args__ = (
        Index(
            'po_approval_requests_one_pending_per_document',
            'document_id',
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        # PO numbers repeat across projects; they are unique within their numbering scope.
        UniqueConstraint('allocated_scope_key', 'allocated_po_number', name='po_approval_requests_scope_number_uniq'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    document_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('procurement_documents.id'), nullable=False, index=True)
    project_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    counterparty_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('counterparties.id'), nullable=False)
    requested_by: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[ApprovalStatus] = mapped_column(
        SQLEnum(ApprovalStatus, name='approval_status'),
        nullable=False,
        default=ApprovalStatus.PENDING,
        server_default='PENDING',
    )
    snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)

    allocated_po_number: Mapped[str | None] = mapped_column(Text)
    allocated_sequence_value: Mapped[int | None] = mapped_column(Integer)
    allocated_scope_key: Mapped[str | None] = mapped_column(Text)
    artifact_key: Mapped[str | None] = mapped_column(Text)
    last_error: Mapped[str | None] = mapped_column(Text)

    decided_by: Mapped[int | None] = mapped_column(BigInteger)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    decision_comments: Mapped[str | None] = mapped_column(Text)
    generated_po_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey('purchase_orders.id', use_alter=True, name='po_approval_requests_generated_po_fkey'),
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PurchaseOrder(Base):
    """Issued purchase order. Rows are insert-only; a change is a new revision row."""

    __tablename__ = 'purchase_orders'
    __table_args__ = (
        UniqueConstraint('root_po_id', 'revision_number', name='purchase_orders_root_revision_uniq'),
        UniqueConstraint('scope_key', 'po_number', name='purchase_orders_scope_number_uniq'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    po_number: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    scope_key: Mapped[str] = mapped_column(Text, nullable=False)
    project_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    counterparty_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('counterparties.id'), nullable=False)
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    predecessor_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('purchase_orders.id'))
    root_po_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('purchase_orders.id'))
    source_document_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('procurement_documents.id'))
    approval_request_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('po_approval_requests.id'), unique=True)
    snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal('0.00'))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    artifact_key: Mapped[str] = mapped_column(Text, nullable=False)
    issued_by: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @property
    def family_root_id(self) -> int:
        return self.root_po_id if self.root_po_id is not None else self.id


class PONumberSequence(Base):
    __tablename__ = 'po_number_sequences'

    scope_key: Mapped[str] = mapped_column(Text, primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    actor_id: Mapped[int | None] = mapped_column(BigInteger)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    document_id: Mapped[int | None] = mapped_column(BigInteger, index=True)
    approval_request_id: Mapped[int | None] = mapped_column(BigInteger, index=True)
    purchase_order_id: Mapped[int | None] = mapped_column(BigInteger, index=True)
    ip: Mapped[str | None] = mapped_column(String(64))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
