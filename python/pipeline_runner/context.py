"""
Run-scoped values: configuration env, injected secrets and derived identifiers.

Everything in a RunContext is computed once when the run starts and is
read-only afterwards. Per-job mutable state (exported env, step results)
lives in JobState.
"""

import os
import subprocess
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from colored_logger import get_colored_logger, register_secrets

from .config import ConfigError, load_env_file
from .expressions import ExpressionError, render, render_mapping
from .manifest import Job, Pipeline

logger = get_colored_logger(__name__)

SHORT_SHA_LENGTH = 7


@dataclass(frozen=True)
class RunContext:
    workspace: Path
    env: Dict[str, str]
    secrets: Dict[str, str]
    github: Dict[str, str]

    @property
    def sha(self) -> str:
        return self.github["sha"]

    def namespace(self, env: Optional[Mapping[str, str]] = None, steps=None) -> Dict[str, Any]:
        return {
            "env": dict(env if env is not None else self.env),
            "secrets": self.secrets,
            "github": self.github,
            "steps": steps or {},
        }


@dataclass
class JobState:
    """Mutable state of one job: env propagated between its steps and step results."""

    job: Job
    context: RunContext
    env: Dict[str, str] = field(default_factory=dict)
    steps: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    failed: bool = False

    @classmethod
    def start(cls, job: Job, context: RunContext) -> "JobState":
        env = dict(context.env)
        for key, value in job.env.items():
            env[key] = render(str(value), context.namespace(env))
        return cls(job=job, context=context, env=env)

    def namespace(self, step_env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        env = dict(self.env)
        if step_env:
            env.update(step_env)
        return self.context.namespace(env, self.steps)

    def export_env(self, values: Mapping[str, str]) -> None:
        for key, value in values.items():
            logger.debug("Exporting %s to job '%s'", key, self.job.id)
            self.env[key] = str(value)

    def record_step(
        self,
        step_id: Optional[str],
        outputs: Optional[Mapping[str, str]],
        outcome: str,
        conclusion: str,
    ) -> None:
        if not step_id:
            return
        self.steps[step_id] = {
            "outputs": dict(outputs or {}),
            "outcome": outcome,
            "conclusion": conclusion,
        }


def resolve_commit_sha(
    sha: Optional[str] = None,
    workspace: str = ".",
    environ: Optional[Mapping[str, str]] = None,
) -> str:
    """
    Resolve the triggering commit: explicit value, GITHUB_SHA, then git HEAD.

    Raises:
        ConfigError: If no non-empty SHA can be determined.
    """
    environ = os.environ if environ is None else environ
    if sha:
        return sha.strip()
    if environ.get("GITHUB_SHA"):
        return environ["GITHUB_SHA"].strip()

    value = _git_output(["git", "rev-parse", "HEAD"], workspace)
    if not value:
        raise ConfigError(
            "Cannot determine commit SHA: pass --sha, set GITHUB_SHA or run inside a git checkout"
        )
    return value


def resolve_branch(
    branch: Optional[str] = None,
    workspace: str = ".",
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """Resolve the pushed branch name; None when it cannot be determined."""
    environ = os.environ if environ is None else environ
    if branch:
        return branch
    if environ.get("GITHUB_REF_NAME"):
        return environ["GITHUB_REF_NAME"]
    ref = environ.get("GITHUB_REF", "")
    if ref.startswith("refs/heads/"):
        return ref[len("refs/heads/") :]

    value = _git_output(["git", "rev-parse", "--abbrev-ref", "HEAD"], workspace)
    if value and value != "HEAD":
        return value
    return None


def _git_output(cmd, workspace: str) -> str:
    try:
        result = subprocess.run(
            cmd, cwd=workspace, capture_output=True, text=True, check=False, timeout=30
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("git lookup failed: %s", e)
        return ""
    if result.returncode != 0:
        return ""
    return result.stdout.strip()


def collect_secrets(
    pipeline: Pipeline,
    environ: Mapping[str, str],
    prefix: str = "",
    env_file: Optional[str] = None,
    allow_missing: bool = False,
) -> Dict[str, str]:
    """
    Read declared secrets from the environment (and an optional .env file).

    Values in the .env file take precedence over the process environment.
    Optional secrets that are absent resolve to an empty string.

    Raises:
        ConfigError: If a required secret is missing and ``allow_missing`` is False.
    """
    file_values = load_env_file(env_file) if env_file else {}

    secrets: Dict[str, str] = {}
    missing = []
    for spec in pipeline.secrets:
        key = f"{prefix}{spec.name}"
        value = file_values.get(key, environ.get(key, ""))
        if not value and spec.required:
            missing.append(spec.name)
        secrets[spec.name] = value

    if missing and not allow_missing:
        raise ConfigError(f"Missing required secret(s): {', '.join(missing)}")
    for name in missing:
        logger.warning("Secret %s is not set", name)

    register_secrets(value for value in secrets.values() if value)
    return secrets


def render_workflow_env(
    pipeline: Pipeline,
    github: Mapping[str, str],
    secrets: Mapping[str, str],
    overrides: Optional[Mapping[str, Any]] = None,
) -> Dict[str, str]:
    """
    Render the workflow env block once, in declaration order.

    Later entries may reference earlier ones, which is how derived values
    such as the image reference are built.
    """
    overrides = dict(overrides or {})
    for key in overrides:
        if key not in pipeline.env:
            logger.warning("Ignoring env override for undeclared value %s", key)

    env: Dict[str, str] = {}
    for key, raw in pipeline.env.items():
        value = overrides.get(key, raw)
        namespace = {"env": env, "secrets": secrets, "github": github, "steps": {}}
        try:
            env.update(render_mapping({key: value}, namespace))
        except ExpressionError as e:
            raise ConfigError(f"Cannot render env value {key}: {e}") from e
    return env


def build_run_context(
    pipeline: Pipeline,
    config: Dict[str, Any],
    event: str,
    branch: Optional[str],
    sha: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    allow_missing_secrets: bool = False,
) -> RunContext:
    """Compute every run-scoped value before the first step executes."""
    environ = os.environ if environ is None else environ
    global_config = config["global"]
    workspace = Path(global_config["workspace"]).resolve()

    commit_sha = resolve_commit_sha(sha, str(workspace), environ)
    branch = branch or ""
    github = {
        "sha": commit_sha,
        "short_sha": commit_sha[:SHORT_SHA_LENGTH],
        "ref": f"refs/heads/{branch}" if branch else "",
        "ref_name": branch,
        "event_name": event,
        "workspace": str(workspace),
        "repository": environ.get("GITHUB_REPOSITORY", workspace.name),
        "run_id": environ.get("GITHUB_RUN_ID", uuid.uuid4().hex[:12]),
    }

    env_file = global_config.get("env_file")
    if env_file and not os.path.isabs(env_file):
        env_file = str(workspace / env_file)

    secrets = collect_secrets(
        pipeline,
        environ,
        prefix=config.get("secrets", {}).get("env_prefix", ""),
        env_file=env_file,
        allow_missing=allow_missing_secrets,
    )
    env = render_workflow_env(pipeline, github, secrets, config.get("env"))

    logger.info("Run %s for commit %s", github["run_id"], github["short_sha"])
    return RunContext(
        workspace=workspace,
        env=env,
        secrets=secrets,
        github=github,
    )
