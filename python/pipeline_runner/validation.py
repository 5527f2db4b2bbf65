"""
Static checks over a parsed manifest.

Run before anything executes so that an undeclared value, a misspelt step id
or a broken job graph is reported up front instead of halfway through a run.
"""

from typing import Dict, Iterable, List, Set

from .actions import ACTIONS
from .expressions import ExpressionError, find_references, normalize_condition
from .manifest import Job, ManifestError, Pipeline, Step

# Granted levels that satisfy a required level
PERMISSION_LEVELS = {"read": ("read", "write"), "write": ("write",)}


def validate_pipeline(pipeline: Pipeline) -> List[str]:
    """
    Collect every problem in ``pipeline``.

    Returns:
        Human-readable problems; an empty list means the manifest is valid.
    """
    problems: List[str] = []

    if not pipeline.triggers:
        problems.append("No trigger defined")
    if not pipeline.jobs:
        problems.append("No jobs defined")

    secrets = set(pipeline.secret_names)
    if len(secrets) != len(pipeline.secrets):
        problems.append("Duplicate secret declaration")

    # Workflow env entries may only use entries declared before them
    declared_env: Set[str] = set()
    for key, value in pipeline.env.items():
        problems.extend(
            _check_references(value, f"env.{key}", declared_env, secrets, set(), allow_steps=False)
        )
        declared_env.add(key)

    try:
        pipeline.job_order()
    except ManifestError as e:
        problems.append(str(e))

    for job in pipeline.jobs:
        problems.extend(_validate_job(job, declared_env, secrets))
        problems.extend(_check_permissions(job, pipeline.permissions))

    return problems


def assert_valid(pipeline: Pipeline) -> None:
    """Raise ManifestError listing every problem found in ``pipeline``."""
    problems = validate_pipeline(pipeline)
    if problems:
        details = "\n".join(f"  - {problem}" for problem in problems)
        raise ManifestError(f"Manifest '{pipeline.name}' is invalid:\n{details}")


def _validate_job(job: Job, workflow_env: Set[str], secrets: Set[str]) -> List[str]:
    problems: List[str] = []
    env = set(workflow_env)

    for key, value in job.env.items():
        problems.extend(
            _check_references(value, f"job '{job.id}' env.{key}", env, secrets, set(), allow_steps=False)
        )
    env.update(job.env)

    step_ids: Set[str] = set()
    for index, step in enumerate(job.steps):
        where = f"job '{job.id}' step {index + 1} ({step.name})"
        step_env = env | set(step.env)

        for text in _step_texts(step):
            problems.extend(_check_references(text, where, step_env, secrets, step_ids))

        if step.condition is not None:
            try:
                normalize_condition(step.condition)
            except ExpressionError as e:
                problems.append(f"{where}: {e}")

        if step.uses is not None:
            action = ACTIONS.get(step.uses)
            if action is None:
                problems.append(f"{where}: unknown action '{step.uses}'")
            else:
                missing = [name for name in action.required_inputs if name not in step.with_]
                if missing:
                    problems.append(f"{where}: missing input(s) {', '.join(missing)}")
                env.update(action.exports)

        if step.id:
            if step.id in step_ids:
                problems.append(f"{where}: duplicate step id '{step.id}'")
            step_ids.add(step.id)

    return problems


def _check_permissions(job: Job, granted: Dict[str, str]) -> List[str]:
    problems = []
    for index, step in enumerate(job.steps):
        action = ACTIONS.get(step.uses) if step.uses else None
        if action is None:
            continue
        for scope, level in action.permissions.items():
            have = str(granted.get(scope, granted.get("*", "none"))).lower()
            if have not in PERMISSION_LEVELS.get(level, ()):
                problems.append(
                    f"job '{job.id}' step {index + 1} ({step.name}): action '{step.uses}' "
                    f"needs permission '{scope}: {level}' (granted: {have})"
                )
    return problems


def _step_texts(step: Step) -> Iterable[str]:
    if step.run is not None:
        yield step.run
    yield from (v for v in step.with_.values() if isinstance(v, str))
    yield from (v for v in step.env.values() if isinstance(v, str))
    if step.working_directory:
        yield step.working_directory


def _check_references(
    text,
    where: str,
    env: Set[str],
    secrets: Set[str],
    step_ids: Set[str],
    allow_steps: bool = True,
) -> List[str]:
    try:
        references = find_references(text)
    except ExpressionError as e:
        return [f"{where}: {e}"]

    problems = []
    for reference in references:
        if reference.context == "env" and reference.name not in env:
            problems.append(f"{where}: undeclared reference '{reference}'")
        elif reference.context == "secrets" and reference.name not in secrets:
            problems.append(f"{where}: undeclared secret '{reference.name}'")
        elif reference.context == "steps":
            if not allow_steps:
                problems.append(f"{where}: step outputs are not available here")
            elif reference.name not in step_ids:
                problems.append(f"{where}: no earlier step with id '{reference.name}'")
    return problems
