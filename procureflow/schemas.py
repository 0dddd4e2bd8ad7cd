from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from procureflow.models import (
    ApprovalStatus,
    MatchConfidence,
    PaymentTerms,
    ProcurementDocumentStatus,
    ProcurementDocumentType,
)


class ExtractedLineItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    description: str
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    unit: str | None = None
    amount: Decimal


class ExtractionResult(BaseModel):
    """Structured fields returned by the extraction service for one document."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    document_number: str | None = None
    document_date: date | None = None
    due_date: date | None = None
    total_amount: Decimal | None = None
    tax_amount: Decimal | None = None
    currency: str | None = None
    counterparty_name: str | None = None
    payment_terms: str | None = None
    terms_and_conditions: str | None = None
    line_items: list[ExtractedLineItem] = Field(default_factory=list)
    confidence: Decimal = Field(ge=0, le=100)
    inferred_type: ProcurementDocumentType | None = None

    def canonical_payload(self) -> dict:
        return self.model_dump(mode='json')

    def payload_hash(self) -> str:
        encoded = json.dumps(self.canonical_payload(), sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(encoded.encode('utf-8')).hexdigest()


class ExtractionCallback(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str | None = None
    document_id: int | None = None
    status: Literal['PENDING', 'DONE', 'ERROR']
    result: ExtractionResult | None = None
    error: str | None = None


class LineItemIn(BaseModel):
    description: str
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    unit: str | None = None
    amount: Decimal


class POTerms(BaseModel):
    counterparty_id: int | None = None
    total_amount: Decimal | None = None
    tax_amount: Decimal | None = None
    currency: str | None = None
    payment_terms: PaymentTerms | None = None
    custom_payment_terms: str | None = None
    terms_and_conditions: str | None = None
    delivery_date: date | None = None
    delivery_address: str | None = None
    line_items: list[LineItemIn] | None = None


class PORequestCreate(BaseModel):
    quotation_document_id: int
    terms: POTerms = Field(default_factory=POTerms)


class DecisionIn(BaseModel):
    decision: Literal['APPROVED', 'REJECTED']
    comments: str | None = None


class LinkageIn(BaseModel):
    purchase_order_id: int


class DocumentLinkageIn(BaseModel):
    target_document_id: int


class DocumentFieldsUpdate(BaseModel):
    document_number: str | None = None
    document_date: date | None = None
    due_date: date | None = None
    total_amount: Decimal | None = None
    tax_amount: Decimal | None = None
    currency: str | None = None
    payment_terms: str | None = None
    terms_and_conditions: str | None = None


class CounterpartyAssignment(BaseModel):
    counterparty_id: int


class LineItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    line_number: int
    description: str
    quantity: Decimal | None
    unit_price: Decimal | None
    unit: str | None
    amount: Decimal


class _DocumentDetailBase(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    status: ProcurementDocumentStatus
    original_file_name: str
    extraction_confidence: Decimal | None
    document_number: str | None
    document_date: date | None
    total_amount: Decimal | None
    tax_amount: Decimal | None
    currency: str | None
    counterparty_id: int | None
    counterparty_match_confidence: MatchConfidence | None
    counterparty_needs_review: bool
    warnings: list[dict]
    line_items: list[LineItemOut] = Field(default_factory=list)
    created_at: datetime | None = None


class QuotationDetail(_DocumentDetailBase):
    document_type: Literal[ProcurementDocumentType.SUPPLIER_QUOTATION]
    payment_terms: str | None
    terms_and_conditions: str | None
    linked_purchase_order_id: int | None


class SupplierInvoiceDetail(_DocumentDetailBase):
    document_type: Literal[ProcurementDocumentType.SUPPLIER_INVOICE]
    due_date: date | None
    linked_purchase_order_id: int | None
    linked_variation_order_id: int | None
    over_billed: bool


class VariationOrderDetail(_DocumentDetailBase):
    document_type: Literal[ProcurementDocumentType.VARIATION_ORDER]
    # The PO this variation revises; always present once LINKED.
    linked_purchase_order_id: int | None
    revised_purchase_order_id: int | None = None


class SupplierPODetail(_DocumentDetailBase):
    document_type: Literal[ProcurementDocumentType.SUPPLIER_PO]
    linked_quotation_id: int | None


class CustomerPODetail(_DocumentDetailBase):
    document_type: Literal[ProcurementDocumentType.CUSTOMER_PO]
    payment_terms: str | None


class ClientInvoiceDetail(_DocumentDetailBase):
    document_type: Literal[ProcurementDocumentType.CLIENT_INVOICE]
    due_date: date | None


class UnclassifiedDetail(_DocumentDetailBase):
    """A document uploaded as AUTO whose type has not been inferred yet."""

    document_type: None = None


DocumentDetail = Annotated[
    Union[
        QuotationDetail,
        SupplierInvoiceDetail,
        VariationOrderDetail,
        SupplierPODetail,
        CustomerPODetail,
        ClientInvoiceDetail,
    ],
    Field(discriminator='document_type'),
]


class DocumentStatusOut(BaseModel):
    document_id: int
    status: ProcurementDocumentStatus
    extraction_confidence: Decimal | None
    settled: bool
    next_poll_after_seconds: int | None
    give_up: bool


class PORequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    document_id: int
    project_id: int
    counterparty_id: int
    requested_by: int
    status: ApprovalStatus
    snapshot: dict
    allocated_po_number: str | None
    generated_po_id: int | None
    decided_by: int | None
    decided_at: datetime | None
    decision_comments: str | None
    last_error: str | None


class PurchaseOrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    po_number: str
    project_id: int
    counterparty_id: int
    revision_number: int
    predecessor_id: int | None
    root_po_id: int | None
    source_document_id: int | None
    approval_request_id: int | None
    snapshot: dict
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    currency: str
    artifact_key: str
