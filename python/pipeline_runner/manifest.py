"""
Workflow manifest model and loader.

A manifest is a YAML document with a trigger (``on``), a workflow ``env``
block, declared ``secrets`` and an ordered set of ``jobs`` whose ``steps``
either ``run`` a shell script or ``uses`` a built-in action.
"""

import fnmatch
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from colored_logger import get_colored_logger

logger = get_colored_logger(__name__)

DEFAULT_MANIFEST = Path(__file__).parent / "default-pipeline.yml"


class ManifestError(Exception):
    """Raised when a manifest is malformed or fails validation."""


@dataclass
class Trigger:
    """Source-control event that starts the pipeline."""

    event: str
    branches: List[str] = field(default_factory=list)

    def matches(self, event: str, branch: Optional[str]) -> bool:
        if event != self.event:
            return False
        if not self.branches:
            return True
        if not branch:
            return False
        return any(fnmatch.fnmatchcase(branch, pattern) for pattern in self.branches)


@dataclass
class SecretSpec:
    name: str
    required: bool = True


@dataclass
class Step:
    """A single step inside a job."""

    name: str
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, Any] = field(default_factory=dict)
    condition: Optional[str] = None
    continue_on_error: bool = False
    timeout_minutes: Optional[float] = None
    working_directory: Optional[str] = None

    @property
    def kind(self) -> str:
        return "run" if self.run is not None else "uses"


@dataclass
class Job:
    """An ordered list of steps plus the jobs it depends on."""

    id: str
    steps: List[Step]
    name: Optional[str] = None
    needs: List[str] = field(default_factory=list)
    env: Dict[str, Any] = field(default_factory=dict)
    runs_on: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass
class Pipeline:
    name: str
    triggers: List[Trigger]
    jobs: List[Job]
    env: Dict[str, Any] = field(default_factory=dict)
    secrets: List[SecretSpec] = field(default_factory=list)
    permissions: Dict[str, str] = field(default_factory=dict)
    source: Optional[str] = None

    def get_job(self, job_id: str) -> Job:
        for job in self.jobs:
            if job.id == job_id:
                return job
        raise ManifestError(f"Unknown job '{job_id}'")

    @property
    def secret_names(self) -> List[str]:
        return [secret.name for secret in self.secrets]

    def is_triggered_by(self, event: str, branch: Optional[str]) -> bool:
        return any(trigger.matches(event, branch) for trigger in self.triggers)

    def job_order(self) -> List[Job]:
        """
        Jobs in dependency order, keeping manifest order among independent jobs.

        Raises:
            ManifestError: On unknown dependencies or cycles.
        """
        known = {job.id for job in self.jobs}
        for job in self.jobs:
            for need in job.needs:
                if need not in known:
                    raise ManifestError(f"Job '{job.id}' needs unknown job '{need}'")

        ordered: List[Job] = []
        placed = set()
        remaining = list(self.jobs)
        while remaining:
            ready = [job for job in remaining if all(n in placed for n in job.needs)]
            if not ready:
                cycle = ", ".join(job.id for job in remaining)
                raise ManifestError(f"Dependency cycle between jobs: {cycle}")
            job = ready[0]
            ordered.append(job)
            placed.add(job.id)
            remaining.remove(job)
        return ordered


def default_manifest_path() -> Path:
    return DEFAULT_MANIFEST


def load_manifest(path: Optional[Union[str, Path]] = None) -> Pipeline:
    """
    Load a manifest from YAML.

    Args:
        path: Manifest file; the bundled Java pipeline when omitted

    Returns:
        Parsed Pipeline
    """
    manifest_path = Path(path) if path else default_manifest_path()
    if not manifest_path.exists():
        raise ManifestError(f"Manifest not found: {manifest_path}")

    try:
        with open(manifest_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {manifest_path}: {e}") from e

    pipeline = parse_manifest(data)
    pipeline.source = str(manifest_path)
    logger.debug(
        "Loaded manifest '%s' with %d job(s) from %s",
        pipeline.name,
        len(pipeline.jobs),
        manifest_path,
    )
    return pipeline


def parse_manifest(data: Any) -> Pipeline:
    """Build a Pipeline from an already-decoded YAML document."""
    if not isinstance(data, dict):
        raise ManifestError("Manifest must be a mapping")

    # PyYAML follows YAML 1.1, so a bare `on:` key loads as boolean True
    triggers_data = data.get("on", data.get(True))
    triggers = _parse_triggers(triggers_data)

    jobs_data = data.get("jobs")
    if not isinstance(jobs_data, dict) or not jobs_data:
        raise ManifestError("Manifest must define at least one job under 'jobs'")

    jobs = [_parse_job(job_id, job_data) for job_id, job_data in jobs_data.items()]

    return Pipeline(
        name=str(data.get("name") or "pipeline"),
        triggers=triggers,
        jobs=jobs,
        env=_parse_env(data.get("env"), "workflow"),
        secrets=_parse_secrets(data.get("secrets")),
        permissions=_parse_permissions(data.get("permissions")),
    )


def _parse_triggers(data: Any) -> List[Trigger]:
    if data is None:
        raise ManifestError("Manifest must define a trigger under 'on'")
    if isinstance(data, str):
        return [Trigger(event=data)]
    if isinstance(data, list):
        return [Trigger(event=str(event)) for event in data]
    if not isinstance(data, dict):
        raise ManifestError("'on' must be an event name, a list or a mapping")

    triggers = []
    for event, options in data.items():
        branches = []
        if isinstance(options, dict):
            branches = options.get("branches") or []
            if isinstance(branches, str):
                branches = [branches]
        triggers.append(Trigger(event=str(event), branches=[str(b) for b in branches]))
    return triggers


def _parse_permissions(data: Any) -> Dict[str, str]:
    if data is None:
        return {}
    # `read-all` / `write-all` grant that level to every scope
    if data in ("read-all", "write-all"):
        return {"*": data.split("-")[0]}
    if not isinstance(data, dict):
        raise ManifestError("'permissions' must be a mapping, read-all or write-all")
    return {str(scope): str(level) for scope, level in data.items()}


def _parse_env(data: Any, owner: str) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManifestError(f"'env' of {owner} must be a mapping")
    return {str(key): value for key, value in data.items()}


def _parse_secrets(data: Any) -> List[SecretSpec]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ManifestError("'secrets' must be a list")

    secrets = []
    for entry in data:
        if isinstance(entry, str):
            secrets.append(SecretSpec(name=entry))
        elif isinstance(entry, dict) and entry.get("name"):
            secrets.append(
                SecretSpec(name=str(entry["name"]), required=bool(entry.get("required", True)))
            )
        else:
            raise ManifestError(f"Invalid secret declaration: {entry!r}")
    return secrets


def _parse_job(job_id: str, data: Any) -> Job:
    if not isinstance(data, dict):
        raise ManifestError(f"Job '{job_id}' must be a mapping")

    steps_data = data.get("steps")
    if not isinstance(steps_data, list) or not steps_data:
        raise ManifestError(f"Job '{job_id}' must have a non-empty 'steps' list")

    needs = data.get("needs") or []
    if isinstance(needs, str):
        needs = [needs]

    return Job(
        id=str(job_id),
        name=data.get("name"),
        steps=[_parse_step(job_id, index, step) for index, step in enumerate(steps_data)],
        needs=[str(need) for need in needs],
        env=_parse_env(data.get("env"), f"job '{job_id}'"),
        runs_on=data.get("runs-on"),
    )


def _parse_step(job_id: str, index: int, data: Any) -> Step:
    where = f"step {index + 1} of job '{job_id}'"
    if not isinstance(data, dict):
        raise ManifestError(f"{where} must be a mapping")

    run = data.get("run")
    uses = data.get("uses")
    if (run is None) == (uses is None):
        raise ManifestError(f"{where} must define exactly one of 'run' or 'uses'")

    with_ = data.get("with") or {}
    if not isinstance(with_, dict):
        raise ManifestError(f"'with' of {where} must be a mapping")

    timeout = data.get("timeout-minutes")
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            raise ManifestError(f"'timeout-minutes' of {where} must be a number")

    condition = data.get("if")
    return Step(
        name=str(data.get("name") or run or uses),
        id=str(data["id"]) if data.get("id") is not None else None,
        run=str(run) if run is not None else None,
        uses=str(uses) if uses is not None else None,
        with_=dict(with_),
        env=_parse_env(data.get("env"), where),
        condition=str(condition) if condition is not None else None,
        continue_on_error=bool(data.get("continue-on-error", False)),
        timeout_minutes=timeout,
        working_directory=data.get("working-directory"),
    )
