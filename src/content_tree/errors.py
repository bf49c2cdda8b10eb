"""Typed errors raised by the content tree core.

Each error carries a stable ``kind`` string. The core never maps kinds to
transport concerns; see ``content_tree.error_handlers`` for the HTTP side.
"""

from __future__ import annotations


class TreeError(Exception):
    kind: str = "tree_error"
    fatal: bool = False
    retryable: bool = False

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message: str = message
        self.details: dict[str, object] = details or {}


class NotFound(TreeError):
    kind = "not_found"


class PathIntegrityError(TreeError):
    # A stored path broke the codec contract: a data bug, never retried.
    kind = "path_integrity"
    fatal = True


class MalformedPath(PathIntegrityError):
    kind = "malformed_path"


class PrefixMismatch(PathIntegrityError):
    kind = "prefix_mismatch"


class CycleDetected(TreeError):
    kind = "cycle_detected"


class ConstraintViolation(TreeError):
    kind = "constraint_violation"


class DuplicateCode(TreeError):
    kind = "duplicate_code"


class NotASibling(TreeError):
    kind = "not_a_sibling"


class VersionConflict(TreeError):
    kind = "version_conflict"
    retryable = True


class HasChildren(TreeError):
    kind = "has_children"


class StorageUnavailable(TreeError):
    kind = "storage_unavailable"
    retryable = True
