"""{{variable}} substitution for action selectors, values and URLs."""

import re
from types import MappingProxyType
from typing import Any, Mapping, Optional

from ..core.models import WorkflowAction


PLACEHOLDER = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")

_MISSING = object()


def lookup(bindings: Mapping[str, Any], name: str) -> Any:
    """
    Resolve a binding name, following dots into nested mappings and lists.

    A flat key containing dots wins over a nested path. Returns None when
    nothing is bound.
    """
    if name in bindings:
        return bindings[name]

    current: Any = bindings
    for part in name.split("."):
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)):
            try:
                index = int(part)
            except ValueError:
                return None
            current = current[index] if 0 <= index < len(current) else _MISSING
        else:
            return None
        if current is _MISSING:
            return None
    return current


def substitute(template: Any, bindings: Mapping[str, Any]) -> Any:
    """Replace every bound {{name}}; unresolved placeholders stay verbatim."""
    if not isinstance(template, str):
        return template

    def replace(match: re.Match) -> str:
        value = lookup(bindings, match.group(1))
        if value is None:
            return match.group(0)
        return str(value)

    return PLACEHOLDER.sub(replace, template)


def find_placeholders(template: Any) -> list[str]:
    """Names referenced by a template, in first-appearance order."""
    if not isinstance(template, str):
        return []
    names: list[str] = []
    for name in PLACEHOLDER.findall(template):
        if name not in names:
            names.append(name)
    return names


def has_unresolved(template: Any, bindings: Mapping[str, Any]) -> bool:
    return any(lookup(bindings, name) is None for name in find_placeholders(template))


class VariableBinder:
    """Read-only binding map with layered overrides for loop iterations."""

    def __init__(self, bindings: Optional[Mapping[str, Any]] = None):
        self._bindings = MappingProxyType(dict(bindings or {}))

    @property
    def bindings(self) -> Mapping[str, Any]:
        return self._bindings

    def bind(self, **extra: Any) -> "VariableBinder":
        """New binder with `extra` layered over the current bindings."""
        return VariableBinder({**self._bindings, **extra})

    def resolve(self, template: Any) -> Any:
        return substitute(template, self._bindings)

    def resolve_action(self, action: WorkflowAction) -> dict[str, Optional[str]]:
        return {
            "selector": self.resolve(action.selector),
            "value": self.resolve(action.value),
            "url": self.resolve(action.url),
        }

    def unresolved(self, action: WorkflowAction) -> list[str]:
        """Placeholder names in the action that have no binding."""
        missing: list[str] = []
        for template in (action.selector, action.value, action.url):
            for name in find_placeholders(template):
                if lookup(self._bindings, name) is None and name not in missing:
                    missing.append(name)
        return missing
