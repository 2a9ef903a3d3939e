"""Error taxonomy for share-session operations.

Every error carries an HTTP-ish ``status_code`` so the transport layer can map
it without knowing the concrete class.
"""


class ShareError(Exception):
    """Base class for all share-session errors."""

    status_code: int = 500

    def __init__(self, message: str = "Share session operation failed"):
        self.message = message
        super().__init__(self.message)


class ValidationError(ShareError):
    """Raised when a required field is missing or malformed."""

    status_code = 400


class ShareCodeConflict(ValidationError):
    """Raised when a share code is already held by a non-expired session."""

    status_code = 409

    def __init__(self, share_code: str):
        self.share_code = share_code
        super().__init__(f"Share code already in use: {share_code}")


class BlobTooLarge(ValidationError):
    """Raised when an upload exceeds the blob store's size limit."""

    status_code = 413

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"File of {size} bytes exceeds the {limit} byte limit")


class NotFound(ShareError):
    """Raised for unknown sessions or files, and for lazily expired sessions."""

    status_code = 404


class OperationTimeout(ShareError, TimeoutError):
    """Raised when a provider call exceeds its deadline.

    Kept distinct from StorageFailure so operators can tell connectivity
    problems apart from provider-side errors.
    """

    status_code = 503

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            f"{operation} timed out after {timeout:g}s; the storage provider is unreachable"
        )


class StorageFailure(ShareError):
    """Raised when a metadata or blob provider rejects or fails a call."""

    status_code = 500


class NonCriticalFailure(ShareError):
    """A failure that is logged but never surfaced to the triggering caller."""

    status_code = 500


class SweepInProgress(ShareError):
    """Raised when a cleanup pass is requested while another one is running."""

    status_code = 409

    def __init__(self, message: str = "A cleanup pass is already running"):
        super().__init__(message)


class ConfigurationError(ShareError):
    """Raised at start-up when settings are missing or inconsistent."""

    status_code = 500
