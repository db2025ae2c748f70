"""Placeholder resolution against the run's variable pool.

``{{nodeId.path}}`` reads ``path`` out of the recorded output of ``nodeId``;
``{{input}}`` (or ``{{__input__}}``) is the raw trigger input and ``{{sys.*}}``
exposes run metadata. Missing nodes and missing paths render as an empty
string so formatting templates never fail a run.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional, Set

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([\w][\w.-]*)\s*\}\}")

INPUT_TOKENS = frozenset({"input", "__input__"})
SYS_TOKEN = "sys"


def _maybe_parse_json(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        if stripped[:1] in ("{", "["):
            try:
                return json.loads(stripped)
            except ValueError:
                return value
    return value


def walk_path(value: Any, parts: Iterable[str]) -> Any:
    """Follow dotted ``parts`` into ``value``; returns None when the path breaks."""
    current = value
    for part in parts:
        current = _maybe_parse_json(current)
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return current


def render_value(value: Any) -> str:
    """String form used when a value is interpolated into text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple, bool)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def split_reference(reference: str) -> tuple[str, List[str]]:
    head, _, rest = reference.strip().partition(".")
    return head, [part for part in rest.split(".") if part] if rest else []


def references(value: Any) -> Set[str]:
    """Node ids referenced by placeholders anywhere inside ``value``."""
    found: Set[str] = set()
    if isinstance(value, str):
        for match in PLACEHOLDER_PATTERN.finditer(value):
            head, _ = split_reference(match.group(1))
            if head not in INPUT_TOKENS and head != SYS_TOKEN:
                found.add(head)
    elif isinstance(value, Mapping):
        for item in value.values():
            found |= references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            found |= references(item)
    return found


class TemplateResolver:
    """Resolves placeholders for one run.

    The resolver reads the pool at call time; it holds no cache, so resolving
    the same template twice against an unchanged pool yields the same text.
    """

    def __init__(
        self,
        pool: Mapping[str, Any],
        *,
        run_input: Any = "",
        run_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.pool = pool
        self.run_input = run_input
        self.run_id = run_id
        self.tenant_id = tenant_id
        self.clock = clock

    def _sys_values(self) -> dict:
        return {
            "timestamp": self.clock().isoformat(),
            "run_id": self.run_id or "",
            "tenant_id": self.tenant_id or "",
        }

    def lookup(self, reference: str) -> Any:
        """Raw value addressed by ``reference`` (``node.path``), or None."""
        head, parts = split_reference(reference)
        if head in INPUT_TOKENS:
            root: Any = self.run_input
        elif head == SYS_TOKEN:
            root = self._sys_values()
        elif head in self.pool:
            root = self.pool[head]
        else:
            return None
        if not parts:
            return root
        return walk_path(root, parts)

    def resolve_string(self, template: str) -> str:
        if "{{" not in template:
            return template
        return PLACEHOLDER_PATTERN.sub(
            lambda match: render_value(self.lookup(match.group(1))), template
        )

    def resolve(self, value: Any, *, exclude: Iterable[str] = ()) -> Any:
        """Resolve placeholders recursively; top-level keys in ``exclude`` are copied as-is."""
        excluded = set(exclude)
        if isinstance(value, Mapping):
            return {
                key: (item if key in excluded else self.resolve(item))
                for key, item in value.items()
            }
        if isinstance(value, list):
            return [self.resolve(item) for item in value]
        if isinstance(value, str):
            return self.resolve_string(value)
        return value
