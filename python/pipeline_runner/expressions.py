"""
``${{ ... }}`` expression handling for manifests.

Only dotted references are supported (``env.REGION``, ``secrets.SONAR_TOKEN``,
``github.sha``, ``steps.vm-ip.outputs.ip``) plus the status functions used in
``if:`` conditions.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

EXPRESSION_PATTERN = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
REFERENCE_PATTERN = re.compile(r"^[A-Za-z_][\w-]*(?:\.[A-Za-z_][\w-]*)*$")

CONTEXTS = ("env", "secrets", "github", "steps")
GITHUB_KEYS = (
    "sha",
    "short_sha",
    "ref",
    "ref_name",
    "event_name",
    "workspace",
    "repository",
    "run_id",
)
STEP_ATTRIBUTES = ("outputs", "outcome", "conclusion")
CONDITIONS = ("success()", "failure()", "always()")


class ExpressionError(Exception):
    """Raised for malformed or unresolvable expressions."""


@dataclass(frozen=True)
class Reference:
    """A parsed ``context.path`` reference."""

    context: str
    path: tuple

    @property
    def name(self) -> str:
        return self.path[0] if self.path else ""

    def __str__(self) -> str:
        return ".".join((self.context,) + self.path)


def parse_reference(expression: str) -> Reference:
    """Parse the inside of a ``${{ }}`` block into a Reference."""
    expression = expression.strip()
    if not REFERENCE_PATTERN.match(expression):
        raise ExpressionError(f"Unsupported expression: '{expression}'")

    parts = expression.split(".")
    context, path = parts[0], tuple(parts[1:])
    if context not in CONTEXTS:
        raise ExpressionError(f"Unknown context '{context}' in '{expression}'")
    if not path:
        raise ExpressionError(f"Reference '{expression}' needs a name")

    if context == "github" and path[0] not in GITHUB_KEYS:
        raise ExpressionError(f"Unknown github property '{path[0]}'")
    if context in ("env", "secrets", "github") and len(path) != 1:
        raise ExpressionError(f"Reference '{expression}' is too deep")
    if context == "steps":
        if len(path) < 2 or path[1] not in STEP_ATTRIBUTES:
            raise ExpressionError(
                f"Step reference '{expression}' must use one of {STEP_ATTRIBUTES}"
            )
        if path[1] == "outputs" and len(path) != 3:
            raise ExpressionError(
                f"Step output reference '{expression}' must be steps.<id>.outputs.<name>"
            )
        if path[1] != "outputs" and len(path) != 2:
            raise ExpressionError(f"Reference '{expression}' is too deep")

    return Reference(context, path)


def find_references(text: Any) -> List[Reference]:
    """Return every reference used in ``text`` (non-strings have none)."""
    if not isinstance(text, str):
        return []
    return [parse_reference(match) for match in EXPRESSION_PATTERN.findall(text)]


def resolve(reference: Reference, namespace: Dict[str, Any], placeholders: bool = False) -> str:
    """
    Look a reference up in ``namespace``.

    Args:
        reference: Parsed reference
        namespace: Mapping of context name to its values; ``steps`` maps step
            ids to ``{"outputs": {...}, "outcome": ..., "conclusion": ...}``
        placeholders: Render values that only exist at run time as
            ``<reference>`` instead of failing or rendering empty

    Raises:
        ExpressionError: For unknown names in env/secrets/github or unknown step ids
    """
    values = namespace.get(reference.context, {})

    if reference.context == "steps":
        step_id = reference.path[0]
        if step_id not in values:
            if placeholders:
                return f"<{reference}>"
            raise ExpressionError(f"Unknown step id '{step_id}' in '{reference}'")
        step = values[step_id]
        if reference.path[1] == "outputs":
            outputs = step.get("outputs", {})
            if reference.path[2] not in outputs and placeholders:
                return f"<{reference}>"
            # Missing outputs render empty, as on hosted runners
            return str(outputs.get(reference.path[2], ""))
        return str(step.get(reference.path[1], ""))

    if reference.name not in values:
        if placeholders:
            return f"<{reference}>"
        raise ExpressionError(f"Undeclared reference '{reference}'")
    value = values[reference.name]
    return "" if value is None else str(value)


def render(text: Any, namespace: Dict[str, Any], placeholders: bool = False) -> Any:
    """Substitute every ``${{ }}`` block of ``text``; non-strings pass through."""
    if not isinstance(text, str):
        return text

    def _substitute(match: "re.Match") -> str:
        return resolve(parse_reference(match.group(1)), namespace, placeholders)

    return EXPRESSION_PATTERN.sub(_substitute, text)


def render_mapping(
    mapping: Optional[Dict[str, Any]], namespace: Dict[str, Any], placeholders: bool = False
) -> Dict[str, str]:
    """Render every value of ``mapping`` to a string."""
    rendered = {}
    for key, value in (mapping or {}).items():
        value = render(value, namespace, placeholders)
        rendered[key] = _stringify(value)
    return rendered


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def normalize_condition(condition: Optional[str]) -> str:
    """
    Normalize an ``if:`` value to one of the supported status functions.

    ``None`` means ``success()``. ``${{ always() }}`` and ``always`` are
    accepted as spellings of ``always()``.
    """
    if condition is None or str(condition).strip() == "":
        return "success()"

    text = str(condition).strip()
    match = EXPRESSION_PATTERN.fullmatch(text)
    if match:
        text = match.group(1).strip()
    if not text.endswith("()"):
        text = f"{text}()"
    if text not in CONDITIONS:
        raise ExpressionError(
            f"Unsupported condition '{condition}', expected one of {CONDITIONS}"
        )
    return text


def evaluate_condition(condition: Optional[str], job_failed: bool) -> bool:
    """Decide whether a step runs given the job's failure state so far."""
    normalized = normalize_condition(condition)
    if normalized == "always()":
        return True
    if normalized == "failure()":
        return job_failed
    return not job_failed
