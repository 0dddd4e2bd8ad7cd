from __future__ import annotations

import unittest
from unittest.mock import patch

from db_support import RecordingRenderer, add_counterparty, add_document, make_session_factory
from fastapi.testclient import TestClient

from procureflow.db import get_db
from procureflow.main import app
from procureflow.models import ProcurementDocument, ProcurementDocumentStatus, ProcurementDocumentType
from procureflow.services.document_store import InMemoryDocumentStore
from procureflow.services.extraction_client import MockExtractionService

HEADERS = {'X-Actor-Id': '7'}
BASE = '/projects/1/procurement'

QUOTATION_RESULT = {
    'documentNumber': 'Q-1001',
    'totalAmount': '10700.00',
    'taxAmount': '700.00',
    'currency': 'SGD',
    'counterpartyName': 'ABC Pte Ltd',
    'paymentTerms': 'NET_30',
    'lineItems': [
        {'description': 'Steel beams', 'quantity': '20', 'unitPrice': '300.00', 'amount': '6000.00'},
        {'description': 'Installation', 'amount': '4000.00'},
    ],
    'confidence': 95,
    'inferredType': 'SUPPLIER_QUOTATION',
}


class ProcurementRouterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.store = InMemoryDocumentStore()
        self.extraction = MockExtractionService()
        self.renderer = RecordingRenderer()
        for target, value in (
            ('procureflow.routers.procurement.get_document_store', self.store),
            ('procureflow.routers.procurement.get_extraction_service', self.extraction),
            ('procureflow.routers.procurement.get_po_renderer', self.renderer),
        ):
            patcher = patch(target, return_value=value)
            patcher.start()
            self.addCleanup(patcher.stop)
        session_patcher = patch('procureflow.db.SessionLocal', self.factory)
        session_patcher.start()
        self.addCleanup(session_patcher.stop)

        app.dependency_overrides[get_db] = self._get_db
        self.addCleanup(app.dependency_overrides.clear)
        self.client = TestClient(app)

        with self.factory() as db:
            self.supplier_id = add_counterparty(db, 'ABC Pte. Ltd.').id
            db.commit()

    def _get_db(self):
        with self.factory() as db:
            yield db

    def _document(self, document_id: int) -> ProcurementDocument:
        with self.factory() as db:
            return db.get(ProcurementDocument, document_id)

    def _upload(self, declared_type: str = 'SUPPLIER_QUOTATION') -> dict:
        response = self.client.post(
            f'{BASE}/documents',
            files={'file': ('quote.pdf', b'%PDF-1.4 quotation', 'application/pdf')},
            data={'declared_type': declared_type},
            headers=HEADERS,
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def _extracted_quotation(self) -> int:
        document_id = self._upload()['id']
        job_id = self._document(document_id).extraction_job_id
        response = self.client.post(
            '/procurement/extraction-callback',
            json={'jobId': job_id, 'status': 'DONE', 'result': QUOTATION_RESULT},
        )
        self.assertEqual(response.status_code, 200, response.text)
        return document_id

    def test_healthz(self) -> None:
        self.assertEqual(self.client.get('/healthz').json(), {'status': 'ok'})

    def test_upload_dispatches_extraction(self) -> None:
        body = self._upload()

        self.assertEqual(body['status'], 'UPLOADED')
        self.assertEqual(body['project_id'], 1)
        document = self._document(body['id'])
        self.assertTrue(document.extraction_job_id.startswith('mock-'))
        self.assertEqual(len(self.store.blobs), 1)

    def test_upload_requires_actor_and_supported_type(self) -> None:
        missing_actor = self.client.post(
            f'{BASE}/documents',
            files={'file': ('quote.pdf', b'%PDF', 'application/pdf')},
        )
        self.assertEqual(missing_actor.status_code, 401)

        wrong_type = self.client.post(
            f'{BASE}/documents',
            files={'file': ('notes.txt', b'hello', 'text/plain')},
            headers=HEADERS,
        )
        self.assertEqual(wrong_type.status_code, 400)
        self.assertEqual(self.store.blobs, {})

    def test_status_poll_reports_settled_after_callback(self) -> None:
        document_id = self._upload()['id']

        pending = self.client.get(f'{BASE}/documents/{document_id}/status', params={'attempt': 2})
        self.assertEqual(pending.status_code, 200)
        self.assertFalse(pending.json()['settled'])
        self.assertEqual(pending.json()['next_poll_after_seconds'], 5)

        job_id = self._document(document_id).extraction_job_id
        self.client.post(
            '/procurement/extraction-callback',
            json={'jobId': job_id, 'status': 'DONE', 'result': QUOTATION_RESULT},
        )

        settled = self.client.get(f'{BASE}/documents/{document_id}/status').json()
        self.assertTrue(settled['settled'])
        self.assertEqual(settled['status'], 'EXTRACTED')

    def test_callback_is_idempotent_and_rejects_conflicting_payloads(self) -> None:
        document_id = self._extracted_quotation()
        job_id = self._document(document_id).extraction_job_id

        repeat = self.client.post(
            '/procurement/extraction-callback',
            json={'jobId': job_id, 'status': 'DONE', 'result': QUOTATION_RESULT},
        )
        self.assertEqual(repeat.status_code, 200)
        self.assertEqual(repeat.json()['status'], 'EXTRACTED')

        conflicting = self.client.post(
            '/procurement/extraction-callback',
            json={'jobId': job_id, 'status': 'DONE', 'result': {**QUOTATION_RESULT, 'totalAmount': '99.00'}},
        )
        self.assertEqual(conflicting.status_code, 409)

    def test_callback_for_unknown_job(self) -> None:
        response = self.client.post('/procurement/extraction-callback', json={'jobId': 'nope', 'status': 'ERROR'})
        self.assertEqual(response.status_code, 404)

    def test_callback_before_job_id_is_stored(self) -> None:
        with self.factory() as db:
            document_id = add_document(db, status=ProcurementDocumentStatus.UPLOADED).id
            db.commit()

        response = self.client.post(
            '/procurement/extraction-callback',
            json={'jobId': 'job-early', 'documentId': document_id, 'status': 'DONE', 'result': QUOTATION_RESULT},
        )

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()['status'], 'EXTRACTED')
        self.assertEqual(self._document(document_id).extraction_job_id, 'job-early')

    def test_supplier_po_linked_to_quotation(self) -> None:
        with self.factory() as db:
            quotation_id = add_document(db, total_amount='10700.00', counterparty_id=self.supplier_id).id
            supplier_po_id = add_document(
                db,
                document_type=ProcurementDocumentType.SUPPLIER_PO,
                total_amount='10700.00',
                counterparty_id=self.supplier_id,
            ).id
            db.commit()

        response = self.client.post(
            f'{BASE}/documents/{supplier_po_id}/document-linkage',
            json={'target_document_id': quotation_id},
            headers=HEADERS,
        )
        self.assertEqual(response.status_code, 200, response.text)
        body = response.json()
        self.assertEqual(body['document']['linked_quotation_id'], quotation_id)
        self.assertEqual(body['document']['status'], 'LINKED')
        self.assertEqual(body['warnings'], [])

        detail = self.client.get(f'{BASE}/documents/{supplier_po_id}').json()
        self.assertEqual(detail['linked_quotation_id'], quotation_id)

        again = self.client.post(
            f'{BASE}/documents/{supplier_po_id}/document-linkage',
            json={'target_document_id': quotation_id},
            headers=HEADERS,
        )
        self.assertEqual(again.status_code, 409)

    def test_error_callback_fails_document(self) -> None:
        document_id = self._upload()['id']
        job_id = self._document(document_id).extraction_job_id

        response = self.client.post(
            '/procurement/extraction-callback',
            json={'jobId': job_id, 'status': 'ERROR', 'error': 'unreadable scan'},
        )

        self.assertEqual(response.json()['status'], 'FAILED')
        self.assertEqual(self._document(document_id).failure_reason, 'unreadable scan')

    def test_quotation_to_purchase_order(self) -> None:
        document_id = self._extracted_quotation()

        detail = self.client.get(f'{BASE}/documents/{document_id}').json()
        self.assertEqual(detail['document_type'], 'SUPPLIER_QUOTATION')
        self.assertEqual(detail['counterparty_id'], self.supplier_id)
        self.assertEqual(detail['counterparty_match_confidence'], 'HIGH')

        created = self.client.post(
            f'{BASE}/po-requests',
            json={'quotation_document_id': document_id, 'terms': {}},
            headers=HEADERS,
        )
        self.assertEqual(created.status_code, 201, created.text)
        request = created.json()
        self.assertEqual(request['status'], 'PENDING')
        self.assertEqual(request['snapshot']['subtotal'], '10000.00')

        decided = self.client.post(
            f'{BASE}/po-requests/{request["id"]}/decision',
            json={'decision': 'APPROVED'},
            headers={'X-Actor-Id': '9'},
        )
        self.assertEqual(decided.status_code, 200, decided.text)
        self.assertEqual(decided.json()['allocated_po_number'], 'PO-0001')

        po = self.client.get(f'{BASE}/purchase-orders/{decided.json()["generated_po_id"]}').json()
        self.assertEqual(po['po_number'], 'PO-0001')
        self.assertEqual(float(po['total_amount']), 10700.0)
        self.assertEqual(self._document(document_id).status.value, 'LINKED')

        again = self.client.post(
            f'{BASE}/po-requests/{request["id"]}/decision',
            json={'decision': 'APPROVED'},
            headers={'X-Actor-Id': '9'},
        )
        self.assertEqual(again.status_code, 409)

    def test_render_failure_is_bad_gateway_and_request_stays_pending(self) -> None:
        self.renderer.failures = 1
        document_id = self._extracted_quotation()
        request_id = self.client.post(
            f'{BASE}/po-requests',
            json={'quotation_document_id': document_id},
            headers=HEADERS,
        ).json()['id']

        failed = self.client.post(
            f'{BASE}/po-requests/{request_id}/decision',
            json={'decision': 'APPROVED'},
            headers=HEADERS,
        )
        self.assertEqual(failed.status_code, 502)

        pending = self.client.get(f'{BASE}/po-requests', params={'status': 'PENDING'}).json()
        self.assertEqual([row['id'] for row in pending], [request_id])
        self.assertEqual(pending[0]['allocated_po_number'], 'PO-0001')

    def test_rejection_requires_comments(self) -> None:
        document_id = self._extracted_quotation()
        request_id = self.client.post(
            f'{BASE}/po-requests',
            json={'quotation_document_id': document_id},
            headers=HEADERS,
        ).json()['id']

        response = self.client.post(
            f'{BASE}/po-requests/{request_id}/decision',
            json={'decision': 'REJECTED'},
            headers=HEADERS,
        )
        self.assertEqual(response.status_code, 400)

    def test_other_projects_are_not_visible(self) -> None:
        document_id = self._upload()['id']

        self.assertEqual(self.client.get(f'/projects/2/procurement/documents/{document_id}').status_code, 404)
        self.assertEqual(
            self.client.post(f'/projects/2/procurement/documents/{document_id}/cancel', headers=HEADERS).status_code,
            404,
        )
        self.assertEqual(self.client.get('/projects/2/procurement/documents').json(), [])

    def test_cancel_then_delete(self) -> None:
        document_id = self._upload()['id']

        cancelled = self.client.post(f'{BASE}/documents/{document_id}/cancel', headers=HEADERS)
        self.assertEqual(cancelled.json()['status'], 'CANCELLED')
        self.assertEqual(
            self.client.post(f'{BASE}/documents/{document_id}/cancel', headers=HEADERS).status_code,
            409,
        )

        deleted = self.client.delete(f'{BASE}/documents/{document_id}', headers=HEADERS)
        self.assertEqual(deleted.status_code, 204)
        self.assertIsNone(self._document(document_id))
        self.assertEqual(self.store.blobs, {})


if __name__ == '__main__':
    unittest.main()
