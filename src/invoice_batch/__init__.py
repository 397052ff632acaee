"""Invoice batch pipeline.

Turns a multi-invoice PDF into validated page splits and canonical invoice
records:
- ``orchestrator``: the batch state machine
- ``split_planner``: boundary candidates to page partitions
- ``table_hints``: header scoring that steers extraction
- ``normalizer``: canonical record schema and coercion
- ``status``: polling view for clients
- ``services``: external collaborators and their local implementations
"""

from .config import Settings
from .models import BatchStatus, DocumentBatch, SplitRange
from .normalizer import ExtractedInvoice, normalize_record
from .orchestrator import Orchestrator
from .status import StatusReporter

__all__ = [
    "BatchStatus",
    "DocumentBatch",
    "ExtractedInvoice",
    "Orchestrator",
    "Settings",
    "SplitRange",
    "StatusReporter",
    "normalize_record",
]
