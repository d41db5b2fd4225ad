"""CDA R2 document generation (eICR, QRDA I, QRDA III)."""

from .documents import DOCUMENT_TEMPLATES, CDADocumentBuilder, DocumentTemplate, build_document, get_document_template
from .measures import aggregate_events, aggregate_results
from .sections import SECTIONS, build_section

__all__ = [
    "CDADocumentBuilder",
    "DOCUMENT_TEMPLATES",
    "DocumentTemplate",
    "SECTIONS",
    "aggregate_events",
    "aggregate_results",
    "build_document",
    "build_section",
    "get_document_template",
]
