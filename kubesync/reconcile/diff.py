"""Field-scoped recursive diff and merge for resource specs.

:func:`scoped_diff` walks the *declared* tree only: fields the live object
carries but the declaration does not mention (defaults filled in by the
platform, fields written by other actors) never produce a change.  Every
changed leaf gets its own :class:`~kubesync.models.resources.FieldChange`
with a full dotted path (e.g. ``spec.template.spec.containers[0].image``).

Lists are compared index by index when both sides have the same length;
otherwise the whole list is one leaf, since element identity is unknown.
Values are JSON-serialised so ``old_value``/``new_value`` are always
``str | None``.
"""

from __future__ import annotations

import copy
import json
from collections.abc import Mapping
from typing import cast

from kubesync.models.resources import FieldChange, ResourceSpec

# Recursive value types that appear in a resource spec
_SpecValue = dict[str, object] | list[object] | str | int | float | bool | None

_ABSENT = object()


def scoped_diff(
    live: Mapping[str, object],
    declared: Mapping[str, object],
    *,
    excluded: frozenset[str] = frozenset(),
    atomic: frozenset[str] = frozenset(),
) -> list[FieldChange]:
    """Compare the fields of *declared* against *live*.

    Args:
        live:     Current live spec.
        declared: Fields the caller owns; anything else in *live* is ignored.
        excluded: Dotted paths never compared (owned by another actor).
        atomic:   Dotted paths compared wholesale, so keys removed from the
                  declaration also count as a change.

    Returns:
        Changes sorted by path.  Empty means the declared fields match.
    """
    changes: list[FieldChange] = []
    _diff_dicts(dict(live), dict(declared), "", changes, excluded, atomic)
    changes.sort(key=lambda fc: fc.path)
    return changes


def compute_diff(old_spec: Mapping[str, object], new_spec: Mapping[str, object]) -> list[FieldChange]:
    """Full (unscoped) diff of two specs, used for history and event detail."""
    changes: list[FieldChange] = []
    _full_diff(cast(_SpecValue, dict(old_spec)), cast(_SpecValue, dict(new_spec)), "", changes)
    changes.sort(key=lambda fc: fc.path)
    return changes


def merge_declared(
    live: Mapping[str, object],
    declared: Mapping[str, object],
    *,
    excluded: frozenset[str] = frozenset(),
    atomic: frozenset[str] = frozenset(),
) -> ResourceSpec:
    """Return a copy of *live* with every declared, non-excluded field applied."""
    merged = copy.deepcopy(dict(live))
    _merge_into(merged, declared, "", excluded, atomic)
    return merged


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _json_str(value: object) -> str | None:
    if value is None or value is _ABSENT:
        return None
    return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str)


def _child(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _leaf(path: str, old: object, new: object, changes: list[FieldChange]) -> None:
    if old != new:
        changes.append(FieldChange(path=path, old_value=_json_str(old), new_value=_json_str(new)))


def _diff_dicts(
    live: dict[str, object],
    declared: dict[str, object],
    path: str,
    changes: list[FieldChange],
    excluded: frozenset[str],
    atomic: frozenset[str],
) -> None:
    for key in sorted(declared):
        child_path = _child(path, key)
        if child_path in excluded:
            continue
        _diff_scoped(live.get(key, _ABSENT), declared[key], child_path, changes, excluded, atomic)


def _diff_scoped(
    live_val: object,
    declared_val: object,
    path: str,
    changes: list[FieldChange],
    excluded: frozenset[str],
    atomic: frozenset[str],
) -> None:
    if path in atomic:
        _leaf(path, None if live_val is _ABSENT else live_val, declared_val, changes)
        return

    if isinstance(declared_val, dict) and isinstance(live_val, dict):
        _diff_dicts(live_val, declared_val, path, changes, excluded, atomic)
        return

    if isinstance(declared_val, list) and isinstance(live_val, list) and len(declared_val) == len(live_val):
        for i, item in enumerate(declared_val):
            _diff_scoped(live_val[i], item, f"{path}[{i}]", changes, excluded, atomic)
        return

    # Structural type change, length change, missing field or differing leaf
    _leaf(path, None if live_val is _ABSENT else live_val, declared_val, changes)


def _full_diff(old_val: _SpecValue, new_val: _SpecValue, path: str, changes: list[FieldChange]) -> None:
    if isinstance(old_val, dict) and isinstance(new_val, dict):
        for key in sorted(old_val.keys() | new_val.keys()):
            _full_diff(
                cast(_SpecValue, old_val.get(key)),
                cast(_SpecValue, new_val.get(key)),
                _child(path, key),
                changes,
            )
        return

    if isinstance(old_val, list) and isinstance(new_val, list):
        for i in range(max(len(old_val), len(new_val))):
            old_item = cast(_SpecValue, old_val[i]) if i < len(old_val) else None
            new_item = cast(_SpecValue, new_val[i]) if i < len(new_val) else None
            _full_diff(old_item, new_item, f"{path}[{i}]", changes)
        return

    _leaf(path, old_val, new_val, changes)


def _merge_into(
    target: dict[str, object],
    declared: Mapping[str, object],
    path: str,
    excluded: frozenset[str],
    atomic: frozenset[str],
) -> None:
    for key, value in declared.items():
        child_path = _child(path, key)
        if child_path in excluded:
            continue
        current = target.get(key)
        if child_path not in atomic:
            if isinstance(value, dict) and isinstance(current, dict):
                _merge_into(current, value, child_path, excluded, atomic)
                continue
            if isinstance(value, list) and isinstance(current, list) and len(value) == len(current):
                target[key] = _merge_list(current, value, child_path, excluded, atomic)
                continue
        target[key] = copy.deepcopy(value)


def _merge_list(
    current: list[object],
    declared: list[object],
    path: str,
    excluded: frozenset[str],
    atomic: frozenset[str],
) -> list[object]:
    merged: list[object] = []
    for i, (cur, dec) in enumerate(zip(current, declared, strict=True)):
        item_path = f"{path}[{i}]"
        if isinstance(cur, dict) and isinstance(dec, dict) and item_path not in atomic:
            _merge_into(cur, dec, item_path, excluded, atomic)
            merged.append(cur)
        elif isinstance(cur, list) and isinstance(dec, list) and len(cur) == len(dec):
            merged.append(_merge_list(cur, dec, item_path, excluded, atomic))
        else:
            merged.append(copy.deepcopy(dec))
    return merged
