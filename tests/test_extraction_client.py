from __future__ import annotations

import io
import json
import tempfile
import unittest
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock, patch
from urllib.error import HTTPError, URLError

from procureflow.models import DeclaredDocumentType, ProcurementDocumentType
from procureflow.services.document_store import InMemoryDocumentStore
from procureflow.services.errors import ExternalServiceError
from procureflow.services.extraction_client import (
    JOB_DONE,
    JOB_ERROR,
    JOB_PENDING,
    HttpExtractionService,
    MockExtractionService,
    parse_job_response,
)
from procureflow.services.po_renderer import HtmlPurchaseOrderRenderer

DONE_PAYLOAD = {
    'status': 'DONE',
    'confidence': 88.5,
    'inferredType': 'SUPPLIER_INVOICE',
    'fields': {
        'documentNumber': 'INV-204',
        'documentDate': '2026-03-02',
        'totalAmount': '5350.00',
        'taxAmount': '350.00',
        'currency': 'SGD',
        'counterpartyName': 'ABC Pte Ltd',
        'lineItems': [{'description': 'Cabling', 'amount': '5000.00'}],
    },
}


def _response(payload: dict) -> MagicMock:
    response = MagicMock()
    response.read.return_value = json.dumps(payload).encode('utf-8')
    response.__enter__.return_value = response
    return response


class ParseJobResponseTests(unittest.TestCase):
    def test_done_payload(self) -> None:
        state = parse_job_response(DONE_PAYLOAD)

        self.assertEqual(state.status, JOB_DONE)
        self.assertEqual(state.result.document_number, 'INV-204')
        self.assertEqual(state.result.total_amount, Decimal('5350.00'))
        self.assertEqual(state.result.inferred_type, ProcurementDocumentType.SUPPLIER_INVOICE)
        self.assertEqual(state.result.confidence, Decimal('88.5'))
        self.assertEqual(state.result.line_items[0].amount, Decimal('5000.00'))

    def test_pending_and_error(self) -> None:
        self.assertEqual(parse_job_response({'status': 'pending'}).status, JOB_PENDING)
        failed = parse_job_response({'status': 'ERROR', 'error': 'unreadable scan'})
        self.assertEqual(failed.status, JOB_ERROR)
        self.assertEqual(failed.error, 'unreadable scan')

    def test_unknown_status(self) -> None:
        with self.assertRaises(ExternalServiceError):
            parse_job_response({'status': 'QUEUED'})

    def test_out_of_range_confidence_is_malformed(self) -> None:
        with self.assertRaises(ExternalServiceError):
            parse_job_response({**DONE_PAYLOAD, 'confidence': 140})

    def test_identical_payloads_hash_identically(self) -> None:
        first = parse_job_response(DONE_PAYLOAD).result
        second = parse_job_response(json.loads(json.dumps(DONE_PAYLOAD))).result
        self.assertEqual(first.payload_hash(), second.payload_hash())
        changed = parse_job_response({**DONE_PAYLOAD, 'confidence': 90}).result
        self.assertNotEqual(first.payload_hash(), changed.payload_hash())


class HttpExtractionServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.service = HttpExtractionService(
            base_url='https://extract.example.test/',
            api_key='secret',
            timeout_seconds=7,
            callback_url='https://procureflow.example.test/procurement/extraction-callback',
        )

    @patch('procureflow.services.extraction_client.urlopen')
    def test_submit_job_posts_document_key(self, urlopen: MagicMock) -> None:
        urlopen.return_value = _response({'jobId': 'job-42'})

        job_id = self.service.submit_job(document_key='abc.pdf', declared_type=DeclaredDocumentType.AUTO)

        self.assertEqual(job_id, 'job-42')
        request = urlopen.call_args.args[0]
        self.assertEqual(request.full_url, 'https://extract.example.test/v1/jobs')
        self.assertEqual(request.get_method(), 'POST')
        self.assertEqual(request.get_header('Authorization'), 'Bearer secret')
        body = json.loads(request.data.decode('utf-8'))
        self.assertEqual(body['documentKey'], 'abc.pdf')
        self.assertEqual(body['declaredType'], 'AUTO')
        self.assertNotIn('documentId', body)
        self.assertIn('callbackUrl', body)
        self.assertEqual(urlopen.call_args.kwargs['timeout'], 7)

    @patch('procureflow.services.extraction_client.urlopen')
    def test_submit_job_includes_document_id_for_callbacks(self, urlopen: MagicMock) -> None:
        urlopen.return_value = _response({'jobId': 'job-43'})

        self.service.submit_job(document_key='abc.pdf', declared_type=DeclaredDocumentType.AUTO, document_id=17)

        body = json.loads(urlopen.call_args.args[0].data.decode('utf-8'))
        self.assertEqual(body['documentId'], 17)

    @patch('procureflow.services.extraction_client.urlopen')
    def test_fetch_job_parses_response(self, urlopen: MagicMock) -> None:
        urlopen.return_value = _response(DONE_PAYLOAD)

        state = self.service.fetch_job('job-42')

        self.assertEqual(state.status, JOB_DONE)
        self.assertEqual(urlopen.call_args.args[0].full_url, 'https://extract.example.test/v1/jobs/job-42')
        self.assertEqual(urlopen.call_args.args[0].get_method(), 'GET')

    @patch('procureflow.services.extraction_client.urlopen')
    def test_http_error_becomes_external_service_error(self, urlopen: MagicMock) -> None:
        urlopen.side_effect = HTTPError('https://extract.example.test/v1/jobs', 503, 'Unavailable', {}, io.BytesIO(b'busy'))

        with self.assertRaises(ExternalServiceError) as ctx:
            self.service.submit_job(document_key='abc.pdf', declared_type=DeclaredDocumentType.SUPPLIER_INVOICE)
        self.assertIn('503', str(ctx.exception))

    @patch('procureflow.services.extraction_client.urlopen')
    def test_network_error_becomes_external_service_error(self, urlopen: MagicMock) -> None:
        urlopen.side_effect = URLError('connection refused')

        with self.assertRaises(ExternalServiceError):
            self.service.fetch_job('job-42')

    @patch('procureflow.services.extraction_client.urlopen')
    def test_missing_job_id(self, urlopen: MagicMock) -> None:
        urlopen.return_value = _response({})

        with self.assertRaises(ExternalServiceError):
            self.service.submit_job(document_key='abc.pdf', declared_type=DeclaredDocumentType.AUTO)

    def test_api_key_required(self) -> None:
        service = HttpExtractionService(base_url='https://extract.example.test', api_key='')
        with self.assertRaises(ExternalServiceError):
            service.fetch_job('job-42')


class MockExtractionServiceTests(unittest.TestCase):
    def test_jobs_complete_with_declared_type(self) -> None:
        service = MockExtractionService()
        job_id = service.submit_job(document_key='abc.pdf', declared_type=DeclaredDocumentType.VARIATION_ORDER)

        state = service.fetch_job(job_id)

        self.assertEqual(state.status, JOB_DONE)
        self.assertEqual(state.result.inferred_type, ProcurementDocumentType.VARIATION_ORDER)
        self.assertEqual(sum(item.amount for item in state.result.line_items), Decimal('1000.00'))

    def test_auto_is_classified_and_unknown_jobs_fail(self) -> None:
        service = MockExtractionService()
        job_id = service.submit_job(document_key='scan.png', declared_type=DeclaredDocumentType.AUTO)

        self.assertEqual(service.fetch_job(job_id).result.inferred_type, ProcurementDocumentType.SUPPLIER_QUOTATION)
        self.assertEqual(service.fetch_job('mock-unknown').status, JOB_ERROR)


class HtmlPurchaseOrderRendererTests(unittest.TestCase):
    SNAPSHOT = {
        'po_number': 'PO-0007',
        'revision_number': 0,
        'project_id': 1,
        'counterparty_name': 'ABC <Pte> Ltd',
        'currency': 'SGD',
        'subtotal': '10000.00',
        'tax_amount': '700.00',
        'total_amount': '10700.00',
        'payment_terms': 'NET_30',
        'line_items': [{'description': 'Steel beams', 'quantity': '20', 'unit_price': '300.00', 'amount': '6000.00'}],
    }

    def test_renders_into_store(self) -> None:
        store = InMemoryDocumentStore()
        renderer = HtmlPurchaseOrderRenderer(store)

        key = renderer.render(self.SNAPSHOT)

        html = store.get(key).decode('utf-8')
        self.assertTrue(key.endswith('.html'))
        self.assertIn('Purchase Order PO-0007', html)
        self.assertIn('10700.00', html)
        self.assertIn('ABC &lt;Pte&gt; Ltd', html)
        self.assertIn('NET_30', html)

    def test_number_is_required(self) -> None:
        with self.assertRaises(ExternalServiceError):
            HtmlPurchaseOrderRenderer(InMemoryDocumentStore()).render({**self.SNAPSHOT, 'po_number': None})

    def test_template_errors_surface_as_external_errors(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            Path(tmpdir, 'purchase_order.html').write_text('{{ po.missing.deeper }}', encoding='utf-8')
            store = InMemoryDocumentStore()

            with self.assertRaises(ExternalServiceError):
                HtmlPurchaseOrderRenderer(store, template_dir=tmpdir).render(self.SNAPSHOT)
            self.assertEqual(store.blobs, {})


if __name__ == '__main__':
    unittest.main()
