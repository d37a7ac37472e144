"""Status and condition records persisted on the control plane resource.

All models use Pydantic v2 with camelCase aliases so that
``model_dump(by_alias=True)`` produces the persisted wire form, e.g.::

    {"observedGeneration": 3,
     "conditions": [{"type": "Reconciled", "status": "True", ...}],
     "components": [{"resource": "istio/charts/pilot", "resources": [...]}]}
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from meshplane.models.resources import ResourceKey


class ConditionType(StrEnum):
    INSTALLED = "Installed"
    RECONCILED = "Reconciled"
    READY = "Ready"


class ConditionStatus(StrEnum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionReason(StrEnum):
    INSTALL_SUCCESSFUL = "InstallSuccessful"
    INSTALL_ERROR = "InstallError"
    UPDATE_SUCCESSFUL = "UpdateSuccessful"
    UPDATE_ERROR = "UpdateError"
    DELETION_SUCCESSFUL = "DeletionSuccessful"
    DELETION_ERROR = "DeletionError"
    COMPONENTS_READY = "ComponentsReady"
    COMPONENT_NOT_READY = "ComponentNotReady"


class _StatusModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Condition(_StatusModel):
    """A typed, timestamped status flag."""

    type: ConditionType
    status: ConditionStatus = ConditionStatus.UNKNOWN
    reason: str = ""
    message: str = ""
    last_transition_time: datetime | None = None


class StatusType(_StatusModel):
    """Conditions plus the generation they were computed for."""

    observed_generation: int = 0
    conditions: list[Condition] = Field(default_factory=list)

    def get_condition(self, condition_type: ConditionType) -> Condition:
        """Return the condition of *condition_type*, or an Unknown placeholder."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return Condition(type=condition_type, status=ConditionStatus.UNKNOWN)

    def set_condition(self, condition: Condition, now: datetime | None = None) -> None:
        """Insert or replace the condition of the same type.

        An existing entry is replaced only when status or reason differs;
        the transition time is refreshed only then.
        """
        timestamp = now or datetime.now(UTC)
        for index, existing in enumerate(self.conditions):
            if existing.type != condition.type:
                continue
            if existing.status == condition.status and existing.reason == condition.reason:
                return
            self.conditions[index] = condition.model_copy(update={"last_transition_time": timestamp})
            return
        self.conditions.append(condition.model_copy(update={"last_transition_time": timestamp}))

    def remove_condition(self, condition_type: ConditionType) -> None:
        self.conditions = [c for c in self.conditions if c.type != condition_type]

    def is_condition_true(self, condition_type: ConditionType) -> bool:
        return self.get_condition(condition_type).status == ConditionStatus.TRUE


class ResourceStatus(StatusType):
    """Last-known reconciliation outcome for one API object."""

    resource: str = ""

    @property
    def key(self) -> ResourceKey:
        return ResourceKey.parse(self.resource)


class ComponentStatus(StatusType):
    """Status of one rendered component and every resource it owns."""

    resource: str = ""
    resources: list[ResourceStatus] = Field(default_factory=list)

    def find_resource_by_key(self, key: ResourceKey) -> ResourceStatus | None:
        wanted = str(key)
        for status in self.resources:
            if status.resource == wanted:
                return status
        return None

    def find_resources_of_kind(self, kind: str) -> list[ResourceStatus]:
        return [status for status in self.resources if status.key.kind == kind]

    def add_resource(self, status: ResourceStatus) -> None:
        """Append *status*, replacing an entry with the same key if present."""
        for index, existing in enumerate(self.resources):
            if existing.resource == status.resource:
                self.resources[index] = status
                return
        self.resources.append(status)


class ControlPlaneStatus(StatusType):
    """Top-level status written back to the control plane resource."""

    components: list[ComponentStatus] = Field(default_factory=list)

    def find_component_by_name(self, name: str) -> ComponentStatus | None:
        for component in self.components:
            if component.resource == name:
                return component
        return None

    @classmethod
    def from_object(cls, data: dict[str, Any] | None) -> ControlPlaneStatus:
        return cls.model_validate(data or {})

    def to_object(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Outcome folding
# ---------------------------------------------------------------------------


def update_reconcile_status(status: StatusType, error: BaseException | None) -> None:
    """Fold the outcome of an install/update into *status*.

    A first successful install marks Installed and Reconciled with
    InstallSuccessful.  Later successes leave a True Reconciled condition
    alone and otherwise record UpdateSuccessful.  Failures before anything
    was installed mark both conditions False; later failures only flip
    Reconciled.
    """
    installed = status.get_condition(ConditionType.INSTALLED).status
    if error is None:
        if installed != ConditionStatus.TRUE:
            for condition_type in (ConditionType.INSTALLED, ConditionType.RECONCILED):
                status.set_condition(
                    Condition(
                        type=condition_type,
                        status=ConditionStatus.TRUE,
                        reason=ConditionReason.INSTALL_SUCCESSFUL,
                    )
                )
        elif not status.is_condition_true(ConditionType.RECONCILED):
            status.set_condition(
                Condition(
                    type=ConditionType.RECONCILED,
                    status=ConditionStatus.TRUE,
                    reason=ConditionReason.UPDATE_SUCCESSFUL,
                )
            )
        return

    message = str(error)
    if installed == ConditionStatus.UNKNOWN:
        for condition_type in (ConditionType.INSTALLED, ConditionType.RECONCILED):
            status.set_condition(
                Condition(
                    type=condition_type,
                    status=ConditionStatus.FALSE,
                    reason=ConditionReason.INSTALL_ERROR,
                    message=message,
                )
            )
    else:
        status.set_condition(
            Condition(
                type=ConditionType.RECONCILED,
                status=ConditionStatus.FALSE,
                reason=ConditionReason.UPDATE_ERROR,
                message=message,
            )
        )


def update_delete_status(status: StatusType, error: BaseException | None) -> None:
    """Fold the outcome of a deletion into *status*."""
    if error is None:
        for condition_type, condition_status in (
            (ConditionType.INSTALLED, ConditionStatus.FALSE),
            (ConditionType.RECONCILED, ConditionStatus.TRUE),
        ):
            status.set_condition(
                Condition(
                    type=condition_type,
                    status=condition_status,
                    reason=ConditionReason.DELETION_SUCCESSFUL,
                )
            )
        return
    status.set_condition(
        Condition(
            type=ConditionType.RECONCILED,
            status=ConditionStatus.FALSE,
            reason=ConditionReason.DELETION_ERROR,
            message=str(error),
        )
    )
