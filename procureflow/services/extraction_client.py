from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from pydantic import ValidationError as PydanticValidationError

from procureflow.config import settings
from procureflow.models import DeclaredDocumentType, ProcurementDocumentType
from procureflow.schemas import ExtractedLineItem, ExtractionResult
from procureflow.services.errors import ExternalServiceError

JOB_PENDING = 'PENDING'
JOB_DONE = 'DONE'
JOB_ERROR = 'ERROR'


@dataclass(frozen=True)
class ExtractionJobState:
    status: str
    result: ExtractionResult | None = None
    error: str | None = None


class ExtractionService(Protocol):
    def submit_job(
        self, *, document_key: str, declared_type: DeclaredDocumentType, document_id: int | None = None
    ) -> str: ...

    def fetch_job(self, job_id: str) -> ExtractionJobState: ...


def parse_job_response(payload: dict) -> ExtractionJobState:
    status = str(payload.get('status') or '').upper()
    if status not in {JOB_PENDING, JOB_DONE, JOB_ERROR}:
        raise ExternalServiceError(f'Extraction service returned unknown status: {status!r}')
    if status == JOB_ERROR:
        return ExtractionJobState(status=status, error=payload.get('error') or 'extraction failed')
    if status == JOB_PENDING:
        return ExtractionJobState(status=status)

    fields = dict(payload.get('fields') or {})
    fields['confidence'] = payload.get('confidence', 0)
    fields['inferredType'] = payload.get('inferredType')
    try:
        result = ExtractionResult.model_validate(fields)
    except PydanticValidationError as exc:
        raise ExternalServiceError(f'Extraction service returned malformed fields: {exc}') from exc
    return ExtractionJobState(status=status, result=result)


class HttpExtractionService:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: int | None = None,
        callback_url: str | None = None,
    ) -> None:
        self.base_url = (base_url or settings.extraction_api_base_url).rstrip('/')
        self.api_key = api_key if api_key is not None else settings.extraction_api_key
        self.timeout_seconds = timeout_seconds or settings.extraction_timeout_seconds
        self.callback_url = callback_url if callback_url is not None else settings.extraction_callback_url

    def _request(self, path: str, *, payload: dict | None = None) -> dict:
        if not self.api_key:
            raise ExternalServiceError('EXTRACTION_API_KEY is required')

        headers = {
            'Authorization': f'Bearer {self.api_key}',
            'Accept': 'application/json',
        }
        data = None
        if payload is not None:
            headers['Content-Type'] = 'application/json'
            data = json.dumps(payload).encode('utf-8')

        req = Request(
            url=f'{self.base_url}{path}',
            data=data,
            headers=headers,
            method='POST' if payload is not None else 'GET',
        )
        try:
            with urlopen(req, timeout=self.timeout_seconds) as response:
                return json.loads(response.read().decode('utf-8'))
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise ExternalServiceError(f'Extraction API error {exc.code}: {body}') from exc
        except URLError as exc:
            raise ExternalServiceError(f'Extraction API network error: {exc.reason}') from exc
        except json.JSONDecodeError as exc:
            raise ExternalServiceError('Extraction API returned invalid JSON') from exc

    def submit_job(
        self, *, document_key: str, declared_type: DeclaredDocumentType, document_id: int | None = None
    ) -> str:
        payload = {
            'documentKey': document_key,
            'declaredType': declared_type.value,
        }
        if document_id is not None:
            payload['documentId'] = document_id
        if self.callback_url:
            payload['callbackUrl'] = self.callback_url
        response = self._request('/v1/jobs', payload=payload)
        job_id = response.get('jobId')
        if not job_id:
            raise ExternalServiceError('Extraction API did not return a job id')
        return str(job_id)

    def fetch_job(self, job_id: str) -> ExtractionJobState:
        return parse_job_response(self._request(f'/v1/jobs/{job_id}'))


class MockExtractionService:
    """Deterministic extraction used for local development and tests.

    Every job completes immediately. The declared type is echoed back as the inferred
    type; AUTO documents are classified as supplier quotations.
    """

    def __init__(self) -> None:
        self.jobs: dict[str, DeclaredDocumentType] = {}

    def submit_job(
        self, *, document_key: str, declared_type: DeclaredDocumentType, document_id: int | None = None
    ) -> str:
        job_id = 'mock-' + hashlib.sha1(document_key.encode('utf-8')).hexdigest()[:12]
        self.jobs[job_id] = declared_type
        return job_id

    def fetch_job(self, job_id: str) -> ExtractionJobState:
        declared = self.jobs.get(job_id)
        if declared is None:
            return ExtractionJobState(status=JOB_ERROR, error=f'unknown job {job_id}')
        if declared == DeclaredDocumentType.AUTO:
            inferred = ProcurementDocumentType.SUPPLIER_QUOTATION
        else:
            inferred = ProcurementDocumentType(declared.value)

        result = ExtractionResult(
            document_number=f'DOC-{job_id[-6:].upper()}',
            total_amount=Decimal('1070.00'),
            tax_amount=Decimal('70.00'),
            currency=settings.default_currency,
            counterparty_name='Mock Supplies Pte Ltd',
            payment_terms='NET_30',
            line_items=[
                ExtractedLineItem(description='Mock item A', quantity=Decimal('10'), unit_price=Decimal('60.00'), amount=Decimal('600.00')),
                ExtractedLineItem(description='Mock item B', quantity=Decimal('4'), unit_price=Decimal('100.00'), amount=Decimal('400.00')),
            ],
            confidence=Decimal('92.50'),
            inferred_type=inferred,
        )
        return ExtractionJobState(status=JOB_DONE, result=result)
