class DocWatchError(Exception):
    """Base class for errors raised by the tracking pipeline."""


class TransientUpstreamError(DocWatchError):
    """Network failure, timeout or rate limit. Safe to retry."""

    def __init__(self, message: str, *, status: int | None = None, code: int | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


class PermanentAccessError(DocWatchError):
    """The document is gone or the app lost permission to read it."""

    def __init__(self, document_id: str, message: str = "document not accessible", *, code: int | None = None) -> None:
        super().__init__(f"{document_id}: {message}")
        self.document_id = document_id
        self.code = code


class PersistenceError(DocWatchError):
    """The relational store could not be reached or rejected a write."""


class DeliveryError(DocWatchError):
    """A chat message could not be delivered."""


class InvalidDocumentReference(DocWatchError):
    """Text that is neither a document URL nor a document token."""
