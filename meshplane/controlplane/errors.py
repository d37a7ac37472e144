"""Error taxonomy for a reconciliation pass.

Propagation policy:

- ``ObjectError`` / ``DeleteError`` are recorded on the resource status and
  collected into an ``AggregateError``; sibling objects keep going.
- ``RenderError``, ``NamespaceLabelError`` and any component-level failure
  abort the rest of the pass.
- ``ComponentNotReadyError`` is the only error that turns into "retry soon"
  instead of a failed pass.
- ``StatusPersistError`` is logged only.
"""

from __future__ import annotations

from collections.abc import Iterable

from meshplane.models.resources import ResourceKey


class ReconcileError(Exception):
    """Base class for errors raised during a reconciliation pass."""


class AggregateError(ReconcileError):
    """Several independent failures collected from one component."""

    def __init__(self, errors: list[Exception]) -> None:
        self.errors = errors
        if len(errors) == 1:
            message = str(errors[0])
        else:
            message = "[" + ", ".join(str(e) for e in errors) + "]"
        super().__init__(message)

    @classmethod
    def from_errors(cls, errors: Iterable[Exception]) -> AggregateError | None:
        """Flatten nested aggregates; return None when there is nothing to report."""
        flat: list[Exception] = []
        for error in errors:
            if isinstance(error, AggregateError):
                flat.extend(error.errors)
            else:
                flat.append(error)
        return cls(flat) if flat else None


class RenderError(AggregateError):
    """Chart rendering failed; nothing may be applied."""


class NamespaceLabelError(ReconcileError):
    """The control plane namespace could not be read or labelled."""


class ObjectError(ReconcileError):
    """A single object failed to parse, preprocess, create or patch."""

    def __init__(self, message: str, key: ResourceKey | None = None) -> None:
        super().__init__(f"{key}: {message}" if key is not None else message)
        self.key = key


class DeleteError(ReconcileError):
    """A pruned resource could not be deleted; it stays tracked for retry."""

    def __init__(self, key: ResourceKey, cause: Exception) -> None:
        super().__init__(f"error deleting {key}: {cause}")
        self.key = key
        self.cause = cause


class ComponentNotReadyError(ReconcileError):
    """A component's workloads or webhooks have not become ready yet."""

    def __init__(self, message: str, component: str = "") -> None:
        super().__init__(message)
        self.component = component


class StatusPersistError(ReconcileError):
    """Writing the status back to the control plane resource failed."""
