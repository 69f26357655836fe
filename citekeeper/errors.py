"""Exception hierarchy for the citation lifecycle engine.

Per-item errors (network, validation, discovery, application) are caught by
the component that owns the item. Only coordinator-level failures surface to
the caller of a batch start.
"""

from __future__ import annotations


class CitationEngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause


class NetworkError(CitationEngineError):
    """A probe request failed at the transport level or timed out."""

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        status_code: int = 0,
    ) -> None:
        super().__init__(message, cause)
        self.status_code = status_code


class ValidationError(CitationEngineError):
    """A candidate or citation failed allow-list or shape validation."""


class DiscoveryError(CitationEngineError):
    """The oracle call failed or produced no usable candidate."""


class ApplicationError(CitationEngineError):
    """A replacement could not be written to article content."""


class ChunkFatalError(CitationEngineError):
    """An exception escaped the chunk loop."""

    def __init__(
        self, message: str, chunk_id: str, cause: Exception | None = None
    ) -> None:
        super().__init__(message, cause)
        self.chunk_id = chunk_id


class InvalidTransitionError(CitationEngineError):
    """A suggestion was asked to move to a status its state does not allow."""


class RollbackNotAllowedError(CitationEngineError):
    """The revision is not eligible for rollback or its window has expired."""


class NotFoundError(CitationEngineError):
    """A referenced article, suggestion, revision, job or chunk does not exist."""
