"""Generation sweep: delete owned objects left behind by older generations.

The per-component prune only knows about resources recorded in the previous
status.  Objects that fell out of status tracking (a lost status write, a
renamed component) are still labelled with the owning namespace and carry
the generation they were last applied at.  After a successful pass, every
labelled object of a prunable kind that was not rendered this pass and whose
generation annotation differs from the current generation is deleted.
Objects without the annotation were never stamped by a pass and are left
alone.
"""

from __future__ import annotations

from collections.abc import Iterable, Set

from kubernetes_asyncio.client.exceptions import ApiException
from structlog.typing import FilteringBoundLogger

from meshplane.controlplane.constants import GENERATION_ANNOTATION, OWNER_LABEL
from meshplane.controlplane.errors import DeleteError, ReconcileError
from meshplane.kube.client import PROPAGATION_FOREGROUND, ResourceClient, is_not_found
from meshplane.kube.unstructured import get_annotation
from meshplane.models.resources import ResourceKey
from meshplane.observability.logging import bind_resource
from meshplane.observability.metrics import resource_operations_total


class GenerationPruner:
    def __init__(
        self,
        client: ResourceClient,
        namespace: str,
        generation: int,
        kinds: Iterable[tuple[str, str]],
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._generation = str(generation)
        self._kinds = tuple(kinds)

    async def prune(self, seen: Set[ResourceKey], log: FilteringBoundLogger) -> list[ResourceKey]:
        """Delete stale objects; return the keys that were removed.

        Raises ReconcileError if a list call fails and DeleteError on the
        first delete that fails for a reason other than not-found.
        """
        selector = f"{OWNER_LABEL}={self._namespace}"
        deleted: list[ResourceKey] = []
        for api_version, kind in self._kinds:
            try:
                objects = await self._client.list(api_version, kind, label_selector=selector)
            except ApiException as exc:
                if is_not_found(exc):
                    continue
                log.error("prune_list_failed", api_version=api_version, kind=kind, error=str(exc))
                raise ReconcileError(f"error listing {kind} for pruning: {exc}") from exc

            for obj in objects:
                key = ResourceKey.from_object(obj)
                if key in seen:
                    continue
                generation = get_annotation(obj, GENERATION_ANNOTATION)
                if generation is None or generation == self._generation:
                    continue
                resource_log = bind_resource(log, key)
                resource_log.info("pruning_stale_resource", generation=generation)
                try:
                    await self._client.delete(key, PROPAGATION_FOREGROUND)
                except ApiException as exc:
                    if not is_not_found(exc):
                        resource_operations_total.labels(operation="delete", result="error").inc()
                        resource_log.error("prune_delete_failed", error=str(exc))
                        raise DeleteError(key, exc) from exc
                resource_operations_total.labels(operation="delete", result="success").inc()
                deleted.append(key)
        return deleted
