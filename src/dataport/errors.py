"""Error taxonomy for dataset import, sync and aggregation.

Every error carries a machine-readable ``code`` so callers (the HTTP layer,
the CLI, the event log) can discriminate failures without string matching.
"""

from __future__ import annotations


class DataportError(Exception):
    """Base class for all dataport errors."""

    code = "dataport_error"


class ValidationError(DataportError):
    """Caller-supplied input is malformed (empty name, no rows, bad config)."""

    code = "validation_error"


class DatasetNotFoundError(DataportError):
    """No dataset exists under the requested id.

    Attributes:
        dataset_id: The id that was looked up.
    """

    code = "dataset_not_found"

    def __init__(self, dataset_id: str) -> None:
        self.dataset_id = dataset_id
        super().__init__(f"Dataset {dataset_id!r} not found")


class ConflictError(DataportError):
    """Reserved for multi-writer conflicts; not raised by the current engine."""

    code = "conflict"


class SourceFormatError(DataportError):
    """The source content could not be parsed into headers and rows."""

    code = "source_format_error"


class SourceUnavailableError(DataportError):
    """The source could not be reached (network failure, timeout, auth)."""

    code = "source_unavailable"


class AuthExpiredError(SourceUnavailableError):
    """The delegated credential for an external document is missing or invalid.

    Callers should prompt for re-authorization instead of retrying.
    """

    code = "auth_expired"


class AlreadySyncingError(DataportError):
    """A sync for this dataset is already in progress.

    Attributes:
        dataset_id: The dataset whose sync was rejected.
    """

    code = "already_syncing"

    def __init__(self, dataset_id: str) -> None:
        self.dataset_id = dataset_id
        super().__init__(f"Dataset {dataset_id!r} is already syncing")
