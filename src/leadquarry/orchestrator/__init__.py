"""Multi-source discovery runs: planning, fan-out, merge and scoring."""

from .events import EventType, RunEvent, RunEvents
from .filters import apply_b2b_filters, estimate_company_size
from .merge import RecordMerger, merge_into
from .orchestrator import RunHandle, SourceOrchestrator

__all__ = [
    "EventType",
    "RecordMerger",
    "RunEvent",
    "RunEvents",
    "RunHandle",
    "SourceOrchestrator",
    "apply_b2b_filters",
    "estimate_company_size",
    "merge_into",
]
