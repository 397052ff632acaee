"""External service adapters.

Each module maps to one collaborator of the orchestrator (layout analysis,
boundary detection, record extraction, PDF splitting, file storage) and pairs
its protocol with a local implementation.
"""

from .analyze_layout import LayoutAnalyzer, PyMuPdfLayoutAnalyzer
from .detect_boundaries import BoundaryDetector, KeywordBoundaryDetector, parse_boundaries
from .extract_record import RecordExtractor, TableRecordExtractor, parse_extraction_output
from .file_store import FileStore, LocalFileStore
from .split_pdf import PdfSplitter, PyMuPdfSplitter, pdf_page_count

__all__ = [
    "BoundaryDetector",
    "FileStore",
    "KeywordBoundaryDetector",
    "LayoutAnalyzer",
    "LocalFileStore",
    "PdfSplitter",
    "PyMuPdfLayoutAnalyzer",
    "PyMuPdfSplitter",
    "RecordExtractor",
    "TableRecordExtractor",
    "parse_boundaries",
    "parse_extraction_output",
    "pdf_page_count",
]
