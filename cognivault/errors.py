"""
Error taxonomy for the ingestion and analysis pipeline.

Every error carries the HTTP status and a stable code so the API layer can
render it without knowing where it came from.
"""
from typing import Dict, List, Optional


class CogniVaultError(Exception):
    """Base class for all domain errors."""
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class UnsupportedFileType(CogniVaultError):
    status_code = 415
    code = "UNSUPPORTED_FILE_TYPE"

    def __init__(self, mime_type: str):
        super().__init__(f"Unsupported file type: {mime_type or 'unknown'}")
        self.mime_type = mime_type


class ExtractionFailure(CogniVaultError):
    """The file type is supported but the content could not be read."""
    status_code = 400
    code = "EXTRACTION_FAILED"


class EmptyContent(ExtractionFailure):
    code = "EMPTY_CONTENT"


class FileTooLarge(CogniVaultError):
    status_code = 413
    code = "FILE_TOO_LARGE"


class NotFound(CogniVaultError):
    status_code = 404
    code = "NOT_FOUND"


class ProviderUnavailable(CogniVaultError):
    """LLM or embedding call failed. Always recovered by a fallback."""
    status_code = 503
    code = "PROVIDER_UNAVAILABLE"


class StoreUnavailable(CogniVaultError):
    """The document store, which is the source of truth, rejected a write or read."""
    status_code = 503
    code = "STORE_UNAVAILABLE"


class StorePartialFailure(CogniVaultError):
    """
    One or more best-effort stores (graph, vector) failed while the
    document store write succeeded.
    """
    status_code = 207
    code = "STORE_PARTIAL_FAILURE"

    def __init__(self, chunk_id: str, failures: Dict[str, str]):
        stores = ", ".join(sorted(failures))
        super().__init__(f"Chunk {chunk_id} partially persisted (failed: {stores})")
        self.chunk_id = chunk_id
        self.failures = failures

    @property
    def failed_stores(self) -> List[str]:
        return sorted(self.failures)
