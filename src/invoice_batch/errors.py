"""Failure taxonomy shared by every stage of the pipeline.

Each error carries a stable ``kind`` used by API clients and by the failure
details persisted on a batch, plus a human-readable ``detail``.
"""

from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    kind = "internal"

    def __init__(self, detail: str, *, issues: list[dict[str, Any]] | None = None):
        super().__init__(detail)
        self.detail = detail
        self.issues = issues or []


class InputError(PipelineError):
    """Malformed upload or manual edit. Rejected before any state change."""

    kind = "input"


class InvalidUploadError(InputError):
    pass


class InvalidSplitError(InputError):
    pass


class RecordValidationError(PipelineError):
    """Extraction output (or a correction) does not fit the canonical record.

    ``issues`` holds every violation found, not only the first one.
    """

    kind = "validation"


class StateError(PipelineError):
    """Action requested while the batch is in an incompatible status."""

    kind = "state"


class BatchNotFoundError(PipelineError):
    kind = "not_found"


class FeatureArchivedError(PipelineError):
    kind = "archived_feature"

    def __init__(self, feature: str = "extraction"):
        super().__init__(
            f"The requested {feature} feature has been archived and is not "
            "available in the SPLIT_ONLY delivery."
        )
        self.feature = feature


class AdapterError(PipelineError):
    """An external analysis, detection, extraction or splitting call failed."""

    kind = "adapter"


class AnalysisError(AdapterError):
    pass


class DetectionError(AdapterError):
    pass


class ExtractionError(AdapterError):
    pass


class TruncatedOutputError(ExtractionError):
    kind = "truncated_output"


class SplitError(AdapterError):
    pass


class PollingTimeout(PipelineError):
    kind = "timeout"
