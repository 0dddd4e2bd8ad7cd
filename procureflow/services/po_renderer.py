from __future__ import annotations

from pathlib import Path
from typing import Protocol

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from procureflow.services.document_store import DocumentStore
from procureflow.services.errors import ExternalServiceError

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / 'templates'


class PurchaseOrderRenderer(Protocol):
    def render(self, snapshot: dict) -> str: ...


class HtmlPurchaseOrderRenderer:
    """Renders an issued PO snapshot to HTML and stores it in the document store."""

    template_name = 'purchase_order.html'

    def __init__(self, store: DocumentStore, template_dir: str | Path = TEMPLATE_DIR) -> None:
        self.store = store
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(['html']),
        )

    def render(self, snapshot: dict) -> str:
        if not snapshot.get('po_number'):
            raise ExternalServiceError('Cannot render a purchase order without a PO number')
        try:
            html = self.env.get_template(self.template_name).render(po=snapshot)
        except TemplateError as exc:
            raise ExternalServiceError(f'Purchase order rendering failed: {exc}') from exc
        return self.store.put(html.encode('utf-8'), 'text/html')
