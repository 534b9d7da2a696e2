"""Variable reference tokens: `$<index>.<field>` parsing and substitution.

A parameter value that is exactly one token takes the referenced value with its
original type. A token embedded in a longer string is replaced by the string
form of the referenced value. Substitution recurses into lists and mappings.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

from dt_queue.engine.errors import UnresolvedReferenceError
from dt_queue.engine.models import VariableRef

_SEGMENT = r"(?:[A-Za-z_]\w*|\d+)"
REFERENCE_PATTERN = re.compile(rf"\$(\d+)\.([A-Za-z_]\w*(?:\.{_SEGMENT})*)")
RELATIVE_REFERENCE_PATTERN = re.compile(r"\$@(\d+)\.")

_MISSING = object()


def parse_reference(token: str) -> VariableRef | None:
    """Parse a string that is exactly one reference token."""

    match = REFERENCE_PATTERN.fullmatch(token.strip()) if isinstance(token, str) else None
    if match is None:
        return None
    return VariableRef(task_index=int(match.group(1)), field_path=tuple(match.group(2).split(".")))


def is_reference(value: object) -> bool:
    return isinstance(value, str) and parse_reference(value) is not None


def contains_reference(value: object) -> bool:
    """True when any string inside `value` holds at least one token."""

    return bool(find_references(value))


def find_references(value: object) -> tuple[VariableRef, ...]:
    """All distinct tokens inside a params tree, in first-seen order."""

    found: dict[VariableRef, None] = {}
    _collect(value, found)
    return tuple(found)


def _collect(value: object, found: dict[VariableRef, None]) -> None:
    if isinstance(value, str):
        for match in REFERENCE_PATTERN.finditer(value):
            ref = VariableRef(
                task_index=int(match.group(1)),
                field_path=tuple(match.group(2).split(".")),
            )
            found.setdefault(ref, None)
    elif isinstance(value, Mapping):
        for item in value.values():
            _collect(item, found)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect(item, found)


def lookup_field(result: Mapping[str, Any] | None, field_path: tuple[str, ...]) -> Any:
    """Walk a dotted path through a result; returns `_MISSING` sentinel on miss."""

    current: Any = result
    for segment in field_path:
        if isinstance(current, Mapping):
            if segment not in current:
                return _MISSING
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            position = int(segment)
            if position >= len(current):
                return _MISSING
            current = current[position]
        else:
            return _MISSING
    return current


def substitute(
    params: Mapping[str, Any],
    *,
    task_index: int,
    results: Mapping[int, Mapping[str, Any] | None],
    strict: bool = True,
) -> dict[str, Any]:
    """Return a copy of `params` with every token replaced from completed results.

    `results` holds the stored result of every completed task keyed by index.
    Missing producers and missing fields raise `UnresolvedReferenceError`, or
    leave the token in place when `strict` is false.
    """

    return {
        key: _substitute_value(value, task_index, results, strict=strict)
        for key, value in params.items()
    }


def _substitute_value(
    value: Any,
    task_index: int,
    results: Mapping[int, Mapping[str, Any] | None],
    *,
    strict: bool,
) -> Any:
    if isinstance(value, str):
        whole = parse_reference(value)
        if whole is not None and value == value.strip():
            return _resolve(whole, task_index, results, strict=strict, token=value)

        def _replace(match: re.Match[str]) -> str:
            ref = VariableRef(int(match.group(1)), tuple(match.group(2).split(".")))
            return _stringify(
                _resolve(ref, task_index, results, strict=strict, token=match.group(0)),
            )

        return REFERENCE_PATTERN.sub(_replace, value)
    if isinstance(value, Mapping):
        return {
            key: _substitute_value(item, task_index, results, strict=strict)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_substitute_value(item, task_index, results, strict=strict) for item in value]
    return value


def _resolve(
    ref: VariableRef,
    task_index: int,
    results: Mapping[int, Mapping[str, Any] | None],
    *,
    strict: bool = True,
    token: str = "",
) -> Any:
    try:
        return _lookup(ref, task_index, results)
    except UnresolvedReferenceError:
        if strict:
            raise
        return token or ref.token


def _lookup(
    ref: VariableRef,
    task_index: int,
    results: Mapping[int, Mapping[str, Any] | None],
) -> Any:
    if ref.task_index not in results:
        raise UnresolvedReferenceError(
            task_index,
            ref,
            f"task {ref.task_index} has not completed",
        )
    value = lookup_field(results[ref.task_index], ref.field_path)
    if value is _MISSING:
        raise UnresolvedReferenceError(
            task_index,
            ref,
            f"task {ref.task_index} result has no field {'.'.join(ref.field_path)!r}",
        )
    return value


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def relative_positions(value: object) -> tuple[int, ...]:
    """Sorted batch positions named by `$@k.field` tokens inside a params tree."""

    positions: set[int] = set()
    _collect_relative(value, positions)
    return tuple(sorted(positions))


def _collect_relative(value: object, positions: set[int]) -> None:
    if isinstance(value, str):
        positions.update(
            int(match.group(1)) for match in RELATIVE_REFERENCE_PATTERN.finditer(value)
        )
    elif isinstance(value, Mapping):
        for item in value.values():
            _collect_relative(item, positions)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect_relative(item, positions)


def rewrite_relative(value: Any, index_map: Mapping[int, int]) -> Any:
    """Rewrite in-batch `$@k.field` tokens into absolute `$N.field` tokens.

    `index_map` maps 1-based batch positions to assigned queue indices.
    Unknown positions are left untouched; callers check `relative_positions`
    first.
    """

    if isinstance(value, str):

        def _replace(match: re.Match[str]) -> str:
            position = int(match.group(1))
            if position not in index_map:
                return match.group(0)
            return f"${index_map[position]}."

        return RELATIVE_REFERENCE_PATTERN.sub(_replace, value)
    if isinstance(value, Mapping):
        return {key: rewrite_relative(item, index_map) for key, item in value.items()}
    if isinstance(value, list):
        return [rewrite_relative(item, index_map) for item in value]
    return value
