# templating.py
"""
`${{ scope.path }}` expressions.

Only dotted references are supported (no operators, no function calls):

    ${{ matrix.config.os }}
    ${{ inputs.llvm-sys-version }}
    ${{ env.toolchain-version }}
    ${{ secrets.CODECOV_TOKEN }}
    ${{ trigger.branch }}

Rendering is strict: a reference that does not resolve raises TemplateError
instead of silently expanding to an empty string.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import TemplateError

SCOPES = ("matrix", "env", "inputs", "secrets", "trigger")

_EXPR = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
_REFERENCE = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*(\.[A-Za-z0-9_\-]+)*$")
# hyphens are tolerated (`toolchain-version`); dots, spaces and `=` are not
ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


def build_context(
    *,
    matrix: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
    inputs: Optional[Mapping[str, str]] = None,
    secrets: Optional[Mapping[str, str]] = None,
    trigger: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Mapping[str, Any]]:
    return {
        "matrix": matrix or {},
        "env": env or {},
        "inputs": inputs or {},
        "secrets": secrets or {},
        "trigger": trigger or {},
    }


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, Mapping):
        value = dict(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def lookup(expression: str, context: Mapping[str, Mapping[str, Any]]) -> Any:
    """Resolve one dotted reference against the scoped context."""
    if not _REFERENCE.match(expression):
        raise TemplateError(f"Unsupported expression '{expression}' (only dotted references are allowed)")

    scope, *path = expression.split(".")
    if scope not in SCOPES:
        raise TemplateError(f"Unknown scope '{scope}' in '{expression}'. Known scopes: {list(SCOPES)}")

    value: Any = context.get(scope, {})
    walked = scope
    for part in path:
        if isinstance(value, Mapping) and part in value:
            value = value[part]
            walked = f"{walked}.{part}"
            continue
        raise TemplateError(f"Unknown reference '{expression}' ('{part}' not found under '{walked}')")
    return value


def render(template: str, context: Mapping[str, Mapping[str, Any]]) -> str:
    if not template:
        return template
    return _EXPR.sub(lambda m: _to_text(lookup(m.group(1), context)), template)


def render_all(templates: Iterable[str], context: Mapping[str, Mapping[str, Any]]) -> List[str]:
    return [render(t, context) for t in templates]


def render_mapping(mapping: Mapping[str, Any], context: Mapping[str, Mapping[str, Any]]) -> Dict[str, str]:
    """Render values only; keys are taken literally."""
    return {str(k): render(_to_text(v), context) for k, v in (mapping or {}).items()}


def render_env(mapping: Mapping[str, Any], context: Mapping[str, Mapping[str, Any]]) -> Dict[str, str]:
    """
    Render an environment block whose *names* may be templates too,
    e.g. `LLVM_SYS_${{ inputs.llvm-sys-version }}0_PREFIX`.

    Every rendered name is validated here, before any environment or
    container is built from it.
    """
    out: Dict[str, str] = {}
    for raw_name, raw_value in (mapping or {}).items():
        name = render(str(raw_name), context)
        if not ENV_NAME.match(name):
            raise TemplateError(
                f"Malformed environment variable name {name!r} (rendered from {str(raw_name)!r})"
            )
        out[name] = render(_to_text(raw_value), context)
    return out
