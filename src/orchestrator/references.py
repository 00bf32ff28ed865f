"""Reference interpolation for resource attributes.

Attribute values may embed references to other resources' attributes:

    vpc_id: ${vpc.main.id}
    name: "web-${env.prod.suffix}"

A string that is exactly one reference is replaced by the referenced value
with its original type; references embedded in longer strings are rendered
with str(). Nested keys are addressed with further dots
(${vpc.main.tags.Name}).

Variable references (${var.region}) are resolved when definitions are
loaded; see manifest.interpolate_variables().
"""

import re
from typing import Any, Callable

REFERENCE_PATTERN = re.compile(r'\$\{([^}]+)\}')

# Placeholder for values that can only be known once a dependency is applied
UNKNOWN = '(known after apply)'


class UnresolvedReference(LookupError):
    """A reference could not be resolved."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"${{{expression}}}: {reason}")


def parse_reference(expression: str) -> tuple[str, list[str]]:
    """Split a resource reference into (resource_id, attribute_path).

    Raises:
        ValueError: If the expression is not <type>.<name>.<attr>[.<key>...]
    """
    parts = expression.strip().split('.')
    if len(parts) < 3 or not all(parts):
        raise ValueError(
            f"Invalid reference '${{{expression}}}': expected ${{<type>.<name>.<attribute>}}"
        )
    return f'{parts[0]}.{parts[1]}', parts[2:]


def iter_expressions(value: Any):
    """Yield every ${...} expression found in a nested attribute value."""
    if isinstance(value, str):
        for match in REFERENCE_PATTERN.finditer(value):
            yield match.group(1).strip()
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_expressions(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_expressions(item)


def find_references(value: Any) -> set[str]:
    """Return the resource ids referenced anywhere in value.

    Variable references are ignored.
    """
    refs: set[str] = set()
    for expression in iter_expressions(value):
        if expression.startswith('var.'):
            continue
        resource_id, _ = parse_reference(expression)
        refs.add(resource_id)
    return refs


def lookup_path(data: Any, path: list[str], expression: str) -> Any:
    """Walk attribute path through nested dicts/lists."""
    current = data
    for key in path:
        if current == UNKNOWN:
            return UNKNOWN
        if isinstance(current, dict) and key in current:
            current = current[key]
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            raise UnresolvedReference(expression, f"attribute '{key}' not found")
    return current


def resolve(value: Any, lookup: Callable[[str, list[str], str], Any]) -> Any:
    """Replace references in value using lookup(resource_id, path, expression).

    lookup raises UnresolvedReference when a value is not available. Returns
    UNKNOWN in place of whole-string references whose lookup returned
    UNKNOWN; embedded unknown references make the whole string UNKNOWN.
    """
    if isinstance(value, dict):
        return {k: resolve(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve(v, lookup) for v in value]
    if not isinstance(value, str) or '${' not in value:
        return value

    whole = REFERENCE_PATTERN.fullmatch(value.strip())
    if whole:
        expression = whole.group(1).strip()
        resource_id, path = parse_reference(expression)
        return lookup(resource_id, path, expression)

    unknown = False

    def _substitute(match: re.Match) -> str:
        nonlocal unknown
        expression = match.group(1).strip()
        resource_id, path = parse_reference(expression)
        resolved = lookup(resource_id, path, expression)
        if resolved == UNKNOWN:
            unknown = True
        return str(resolved)

    rendered = REFERENCE_PATTERN.sub(_substitute, value)
    return UNKNOWN if unknown else rendered


def contains_unknown(value: Any) -> bool:
    """True if UNKNOWN appears anywhere in a resolved value."""
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return value == UNKNOWN
