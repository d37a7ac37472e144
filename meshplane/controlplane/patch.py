"""Three-way merge patch computation between live and desired objects.

The desired object carries a ``last-applied-configuration`` annotation (the
JSON of what we applied last time).  Comparing that, the live object and
the new desired object lets us both update changed fields and remove fields
we stopped rendering, without touching fields other actors own.

Rules:

- Only keys present in the desired object (or in the last-applied one) are
  considered; server-populated fields on the live object are ignored.
- ``status`` is never patched.
- Maps are diffed recursively.  Lists are replaced wholesale, but only when
  the live list no longer *covers* the desired one: same length and every
  desired element is a subset of its live counterpart.  This keeps server
  defaulting inside lists (e.g. container ``terminationMessagePath``) from
  producing a patch on every pass.
"""

from __future__ import annotations

import copy
import json
from typing import Any, cast

from meshplane.kube.unstructured import get_annotation, set_annotation

LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"

_IGNORED_TOP_LEVEL: frozenset[str] = frozenset({"status"})
_MISSING = object()


def set_last_applied(obj: dict[str, Any]) -> None:
    """Record *obj* (minus the annotation itself) as its last-applied configuration."""
    snapshot = copy.deepcopy(obj)
    annotations = snapshot.get("metadata", {}).get("annotations") or {}
    annotations.pop(LAST_APPLIED_ANNOTATION, None)
    set_annotation(obj, LAST_APPLIED_ANNOTATION, json.dumps(snapshot, sort_keys=True, separators=(",", ":")))


def last_applied(obj: dict[str, Any]) -> dict[str, Any]:
    """Return the last-applied configuration recorded on *obj*, or ``{}``."""
    raw = get_annotation(obj, LAST_APPLIED_ANNOTATION)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


def create_patch(live: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any] | None:
    """Compute a JSON merge patch turning *live* into *desired*.

    Returns None when the live object already matches.
    """
    original = {k: v for k, v in last_applied(live).items() if k not in _IGNORED_TOP_LEVEL}
    modified = {k: v for k, v in desired.items() if k not in _IGNORED_TOP_LEVEL}
    patch = _diff_maps(original, live, modified)
    return patch or None


def _diff_maps(original: dict[str, Any], current: dict[str, Any], modified: dict[str, Any]) -> dict[str, Any]:
    patch: dict[str, Any] = {}

    # Fields we applied before but no longer render
    for key in original:
        if key not in modified and key in current:
            patch[key] = None

    for key, wanted in modified.items():
        have = current.get(key, _MISSING)
        if isinstance(wanted, dict) and isinstance(have, dict):
            previous = original.get(key)
            sub = _diff_maps(cast(dict[str, Any], previous) if isinstance(previous, dict) else {}, have, wanted)
            if sub:
                patch[key] = sub
        elif isinstance(wanted, list) and isinstance(have, list):
            if not _covers(have, wanted):
                patch[key] = copy.deepcopy(wanted)
        elif have is _MISSING:
            if wanted is not None:
                patch[key] = copy.deepcopy(wanted)
        elif have != wanted:
            patch[key] = copy.deepcopy(wanted)
    return patch


def _covers(have: Any, wanted: Any) -> bool:
    """True if every field of *wanted* is present with the same value in *have*."""
    if isinstance(wanted, dict):
        if not isinstance(have, dict):
            return False
        return all(
            (key in have and _covers(have[key], value)) or (value is None and key not in have)
            for key, value in wanted.items()
        )
    if isinstance(wanted, list):
        if not isinstance(have, list) or len(have) != len(wanted):
            return False
        return all(_covers(h, w) for h, w in zip(have, wanted, strict=True))
    return bool(have == wanted)
