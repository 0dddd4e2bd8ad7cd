from __future__ import annotations

from functools import lru_cache

from procureflow.config import settings
from procureflow.services.document_store import InMemoryDocumentStore, LocalDocumentStore
from procureflow.services.extraction_client import HttpExtractionService, MockExtractionService
from procureflow.services.po_renderer import HtmlPurchaseOrderRenderer


@lru_cache(maxsize=1)
def get_document_store():
    store = settings.document_store.strip().lower()
    if store == 'memory':
        return InMemoryDocumentStore()
    return LocalDocumentStore(settings.document_store_path)


@lru_cache(maxsize=1)
def get_extraction_service():
    provider = settings.extraction_provider.strip().lower()
    if provider == 'http':
        return HttpExtractionService()
    return MockExtractionService()


@lru_cache(maxsize=1)
def get_po_renderer():
    return HtmlPurchaseOrderRenderer(get_document_store())
