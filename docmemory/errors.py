"""
Error taxonomy shared by the record store, graph store and maintenance engine.

    ValidationError       malformed record/node/edge/policy input (before any I/O)
    IntegrityError        duplicate entity id, checksum mismatch, missing file marker
    IntegrityWarning      orphaned edges (reported, never fatal)
    StorageError          filesystem failure during read/write/delete
    MaintenanceError      pruning-run failure (per-entry failures are collected)
"""

from __future__ import annotations

from typing import Optional


class DocMemoryError(Exception):
    """Base class for all docmemory errors."""

    pass


class ValidationError(DocMemoryError, ValueError):
    """Raised when input values are malformed or out of valid range."""

    pass


class IntegrityError(DocMemoryError):
    """Raised when stored data violates an identity or format invariant."""

    def __init__(self, message: str, *, subject: Optional[str] = None):
        super().__init__(message)
        self.subject = subject


class IntegrityWarning(UserWarning):
    """Category for non-fatal consistency findings (e.g. dangling edges)."""

    pass


class StorageError(DocMemoryError):
    """Raised when a filesystem operation fails."""

    def __init__(self, message: str, *, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class MaintenanceError(DocMemoryError):
    """Raised when a maintenance run cannot proceed as a whole."""

    pass


class MaintenanceBusyError(MaintenanceError):
    """Raised when a pruning run is requested while another is in progress."""

    pass
