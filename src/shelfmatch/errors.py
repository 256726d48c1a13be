"""Exception hierarchy shared by pipeline, collaborators and storage."""

from __future__ import annotations


class ShelfmatchError(RuntimeError):
    """Base class for all shelfmatch failures."""


class BatchRequestError(ShelfmatchError, ValueError):
    """Raised when a batch is rejected before any work starts."""


class CatalogError(ShelfmatchError):
    """Raised when catalog search fails (auth, network, undecodable payload)."""


class ComparisonError(ShelfmatchError):
    """Raised when the comparison service cannot be reached or initialized."""


class ComparisonResponseError(ComparisonError):
    """Raised when the comparison service returns output that does not parse."""


class PersistenceError(ShelfmatchError):
    """Raised when the store rejects a write or cannot be reached."""
