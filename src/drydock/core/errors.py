# Copyright 2026. Error taxonomy shared by every drydock component.


class DrydockError(Exception):
    """Base class for drydock errors."""


class NotFoundError(DrydockError, LookupError):
    """No record exists for the given key."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class CorruptError(NotFoundError):
    """A persisted record exists but cannot be parsed.

    Subclasses NotFoundError so callers that recover from a missing record
    recover from a damaged one the same way.
    """

    def __init__(self, kind: str, key: str, path: str = "", detail: str = ""):
        super().__init__(kind, key)
        self.path = path
        self.detail = detail
        msg = f"{kind} corrupt: {key}"
        if path:
            msg += f" ({path})"
        if detail:
            msg += f": {detail}"
        self.args = (msg,)


class ContendedError(DrydockError):
    def __init__(self, resource: str, holder: str = "", remaining_seconds: float = 0.0):
        self.resource = resource
        self.holder = holder
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"lock '{resource}' is held by {holder or 'another holder'} "
            f"(expires in {int(remaining_seconds)}s); retry later or release it"
        )


class MergeConflictError(DrydockError):
    def __init__(self, name: str, files: list[str] | None = None,
                 merged: list[str] | None = None, direction: str = "merge"):
        self.name = name
        self.files = list(files or [])
        self.merged = list(merged or [])
        self.direction = direction
        detail = f": {', '.join(self.files)}" if self.files else ""
        super().__init__(
            f"{direction} conflict in worktree '{name}'{detail}; "
            f"resolve manually and commit"
        )


class StorageError(DrydockError, OSError):
    """Persistent storage is unwritable. Fatal to the calling operation."""


class InvalidTransitionError(DrydockError, ValueError):
    pass
