"""Exception taxonomy for the ingestion pipeline.

Each class carries the flags the API layer turns into JSON fields, so
route handlers never have to inspect messages.
"""

from typing import Optional


class IndexerError(Exception):
    """Base class for pipeline errors."""

    status_code = 500
    error_code = "indexer_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class ConnectivityError(IndexerError):
    """An upstream service was unreachable. Retried at whole-run level."""

    status_code = 502
    error_code = "connectivity_error"


class SwapFeedError(ConnectivityError):
    """A swap feed page failed; the whole fetch for the token is abandoned."""

    def __init__(self, message: str, *, token_address: str, page_index: int, pages_completed: int):
        super().__init__(message)
        self.token_address = token_address
        self.page_index = page_index
        self.pages_completed = pages_completed


class ValidationError(IndexerError):
    """Malformed input. Feed records raising this are dropped, not fatal."""

    status_code = 400
    error_code = "validation_error"


class FeedRecordError(ValidationError):
    def __init__(self, message: str, *, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class PersistenceError(IndexerError):
    """A store write failed. Fatal to the run."""

    error_code = "persistence_error"


class AuthorizationError(IndexerError):
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str, *, requires_password: bool = False):
        super().__init__(message)
        self.requires_password = requires_password

    def to_payload(self) -> dict:
        payload = super().to_payload()
        if self.requires_password:
            payload["requiresPassword"] = True
        return payload


class AlreadyRunningError(IndexerError):
    status_code = 409
    error_code = "already_running"

    def __init__(self, active_run_id: Optional[str]):
        super().__init__("A sync run is already in progress")
        self.active_run_id = active_run_id

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["activeRunId"] = self.active_run_id
        return payload


class FeatureDisabledError(IndexerError):
    status_code = 403
    error_code = "feature_disabled"

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload["featureDisabled"] = True
        return payload
