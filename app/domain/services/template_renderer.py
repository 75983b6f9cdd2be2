"""
Template rendering - ``{{name}}`` placeholder substitution.

Rendering is total: it never raises. A placeholder with no matching
variable (or a None value) is left in the output verbatim. The key is the
exact text between the braces, so ``{{ name }}`` only matches a variable
named `` name ``.
"""
import json
import re
from typing import Any, Mapping

# {{name}}, {{first name}}, {{order.id}}, {{שם}}
PLACEHOLDER_RE = re.compile(r"\{\{([^{}]+)\}\}")


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def render_template(body: str, variables: Mapping[str, Any] | None) -> str:
    """
    Substitute every ``{{name}}`` in ``body`` from ``variables``.

    Nested values (objects, arrays) are substituted as JSON.

    >>> render_template("Hi {{name}}, code {{code}}", {"name": "John"})
    'Hi John, code {{code}}'
    """
    if not body:
        return body or ""
    if not isinstance(variables, Mapping) or not variables:
        return body

    def _replace(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value is None:
            return match.group(0)
        return _format_value(value)

    return PLACEHOLDER_RE.sub(_replace, body)


def extract_placeholders(body: str) -> list[str]:
    """Placeholder names in order of first appearance"""
    seen: dict[str, None] = {}
    for match in PLACEHOLDER_RE.finditer(body or ""):
        seen.setdefault(match.group(1), None)
    return list(seen)
