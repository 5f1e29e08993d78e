"""Error taxonomy for contextmax.

Graph and reference errors are raised *before* any state changes, so a caller
that catches one of these can assume the repository is exactly as it was.
"""

from __future__ import annotations


class ContextMaxError(Exception):
    """Base class for all errors raised by contextmax."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ContextMaxError):
    """Input rejected by validation (bad name, bad enum value, ...)."""


class InvalidNameError(ValidationError):
    """A context set name is empty, starts with a non-letter, or contains whitespace."""

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"Invalid context set name {name!r}: {reason}")


class DuplicateNameError(ValidationError):
    """A context set with this name already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Context set {name!r} already exists")


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


class CircularDependencyError(ContextMaxError):
    """Adding a ``uses`` edge would create a cycle.

    ``path`` is the chain of set names that closes the cycle, starting and
    ending at the parent of the rejected edge.
    """

    def __init__(self, parent: str, child: str, path: list[str] | None = None) -> None:
        self.parent = parent
        self.child = child
        self.path = path or [parent, child, parent]
        super().__init__(f"Circular dependency: {' -> '.join(self.path)}")


class SelfReferenceError(CircularDependencyError):
    """A context set cannot use itself."""

    def __init__(self, name: str) -> None:
        super().__init__(name, name, [name, name])


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


class NotFoundError(ContextMaxError):
    """A referenced set, file id, or file path does not exist."""


class SetNotFoundError(NotFoundError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Context set {name!r} does not exist")


class FileNotInManifestError(NotFoundError):
    def __init__(self, file_id: str) -> None:
        self.file_id = file_id
        super().__init__(f"File id {file_id!r} is not in the files manifest")


class PermissionDeniedError(ContextMaxError):
    """The file-content provider was refused access to a path."""


class SchemaError(ContextMaxError):
    """A persisted ``context-sets.json`` document is malformed."""
