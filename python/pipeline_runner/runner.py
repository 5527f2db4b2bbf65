"""
Main pipeline runner - sequences jobs and their steps.
Jobs run one after another in dependency order; steps inside a job run strictly in order.
"""

import dataclasses
import json
import os
import re
import shlex
import shutil
import subprocess
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from colored_logger import get_colored_logger, mask_secrets

from .actions import ActionError, get_action_class
from .config import ConfigError, load_env_file
from .context import JobState, RunContext, build_run_context, resolve_branch
from .expressions import ExpressionError, evaluate_condition, render, render_mapping
from .manifest import Job, Pipeline, Step
from .quality_gate import QualityGateError
from .validation import assert_valid

logger = get_colored_logger(__name__)

STEP_ERRORS = (
    ActionError,
    ExpressionError,
    QualityGateError,
    subprocess.TimeoutExpired,
    OSError,
)


class StepStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class JobStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass
class StepResult:
    name: str
    step_id: Optional[str]
    outcome: StepStatus
    conclusion: StepStatus
    duration: float = 0.0
    message: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)


@dataclass
class JobResult:
    job_id: str
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    message: str = ""


@dataclass
class RunResult:
    pipeline: str
    triggered: bool
    jobs: List[JobResult] = field(default_factory=list)
    sha: str = ""
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def success(self) -> bool:
        return all(job.status != JobStatus.FAILURE for job in self.jobs)

    def job(self, job_id: str) -> Optional[JobResult]:
        for job in self.jobs:
            if job.job_id == job_id:
                return job
        return None


class PipelineRunner:
    """Runs the jobs of a manifest against external tools."""

    def __init__(
        self,
        config: Dict[str, Any],
        pipeline: Pipeline,
        verbose: bool = False,
        dry_run: bool = False,
    ):
        self.config = config
        self.pipeline = pipeline
        self.verbose = verbose
        self.dry_run = dry_run

        global_config = config["global"]
        self.workspace = Path(global_config["workspace"]).resolve()
        self.reports_dir = self._resolve(global_config["reports_directory"])
        self.artifacts_dir = self._resolve(global_config["artifacts_directory"])
        shell = global_config["shell"]
        self.shell = shlex.split(shell) if isinstance(shell, str) else list(shell)
        self.default_timeout_minutes = global_config.get("default_timeout_minutes")

        # Per-run scratch space for env/output files and credentials
        self.temp_dir: Optional[Path] = None
        self._tool_cache: Dict[str, bool] = {}

    def _resolve(self, path: str) -> Path:
        candidate = Path(path)
        return candidate if candidate.is_absolute() else self.workspace / candidate

    def run_command(
        self,
        cmd: List[str],
        cwd: Optional[Union[str, Path]] = None,
        capture_output: bool = True,
        timeout: Optional[int] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        """
        Run a command with consistent logging and error handling.

        Args:
            cmd: Command to run as list of strings
            cwd: Working directory (defaults to the workspace)
            capture_output: Whether to capture stdout/stderr
            timeout: Command timeout in seconds
            env: Full environment for the child process

        Returns:
            CompletedProcess result
        """
        if cwd is None:
            cwd = self.workspace

        cmd_str = " ".join(cmd)
        logger.debug("Running: %s (cwd: %s)", cmd_str, cwd)

        if self.dry_run:
            logger.info("[DRY RUN] Would run: %s", cmd_str)
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=capture_output,
                text=True,
                timeout=timeout,
                env=env,
                check=False,  # Don't raise on non-zero exit, let caller handle
            )
        except subprocess.TimeoutExpired:
            logger.error("⏰ Command timed out after %ss: %s", timeout, cmd_str)
            raise
        except OSError as e:
            logger.error("💥 Command failed to start: %s - %s", cmd_str, e)
            raise

        if result.returncode == 0:
            logger.debug("Command succeeded: %s", cmd_str)
        else:
            logger.debug("Command failed (code %d): %s", result.returncode, cmd_str)
        return result

    def check_tool_available(self, tool: str) -> bool:
        """Check if a command-line tool is available."""
        if tool not in self._tool_cache:
            try:
                result = self.run_command([tool, "--version"], capture_output=True, timeout=60)
                self._tool_cache[tool] = result.returncode == 0
            except (subprocess.SubprocessError, OSError):
                self._tool_cache[tool] = False
        return self._tool_cache[tool]

    def process_env(
        self, state: JobState, step_env: Optional[Dict[str, str]] = None
    ) -> Dict[str, str]:
        """Environment for child processes: os.environ + job env + step env."""
        env = dict(os.environ)
        env.update(state.env)
        if step_env:
            env.update(step_env)
        return env

    def list_jobs(self) -> None:
        """Log the jobs and steps of the pipeline."""
        logger.info("Pipeline '%s':", self.pipeline.name)
        for job in self.pipeline.job_order():
            needs = f" (needs: {', '.join(job.needs)})" if job.needs else ""
            logger.info("  %s%s", job.display_name, needs)
            for step in job.steps:
                logger.info("    - %s [%s]", step.name, step.uses if step.kind == "uses" else "run")

    def run(
        self,
        event: str = "push",
        branch: Optional[str] = None,
        sha: Optional[str] = None,
        jobs: Optional[List[str]] = None,
        force: bool = False,
    ) -> RunResult:
        """
        Run the pipeline for a source-control event.

        Args:
            event: Triggering event name
            branch: Pushed branch (resolved from the environment or git when omitted)
            sha: Commit to build (resolved from GITHUB_SHA or git when omitted)
            jobs: Restrict the run to these jobs; their needs must be included
            force: Run even when the trigger does not match

        Raises:
            ManifestError: If the manifest fails validation
            ConfigError: For an invalid job selection or missing run inputs
        """
        assert_valid(self.pipeline)

        branch = resolve_branch(branch, str(self.workspace))
        if not force and not self.pipeline.is_triggered_by(event, branch):
            logger.notice(
                "Event '%s' on branch '%s' does not trigger '%s', nothing to do",
                event,
                branch or "?",
                self.pipeline.name,
            )
            return RunResult(pipeline=self.pipeline.name, triggered=False, finished_at=time.time())

        selected = self._select_jobs(jobs)
        context = build_run_context(
            self.pipeline,
            self.config,
            event,
            branch,
            sha=sha,
            allow_missing_secrets=self.dry_run,
        )
        if self.dry_run:
            context = self._with_secret_placeholders(context)

        logger.info("🚀 Starting pipeline '%s'", self.pipeline.name)
        result = RunResult(pipeline=self.pipeline.name, triggered=True, sha=context.sha)
        statuses: Dict[str, JobStatus] = {}

        for job in selected:
            blocked = [need for need in job.needs if statuses.get(need) != JobStatus.SUCCESS]
            if blocked:
                message = f"needs {', '.join(blocked)} to succeed"
                logger.notice("⏭️  Skipping job '%s': %s", job.id, message)
                job_result = JobResult(job.id, JobStatus.SKIPPED, message=message)
            else:
                job_result = self.run_job(job, context)
            statuses[job.id] = job_result.status
            result.jobs.append(job_result)

        result.finished_at = time.time()
        self._save_pipeline_report(result)

        if result.success:
            logger.success("✅ Pipeline '%s' succeeded", self.pipeline.name)
        else:
            logger.failure("❌ Pipeline '%s' failed", self.pipeline.name)
        return result

    def _select_jobs(self, jobs: Optional[List[str]]) -> List[Job]:
        ordered = self.pipeline.job_order()
        if not jobs:
            return ordered

        known = {job.id for job in ordered}
        unknown = [job_id for job_id in jobs if job_id not in known]
        if unknown:
            raise ConfigError(f"Unknown job(s): {', '.join(unknown)}")

        selected = [job for job in ordered if job.id in jobs]
        for job in selected:
            missing = [need for need in job.needs if need not in jobs]
            if missing:
                raise ConfigError(
                    f"Job '{job.id}' needs {', '.join(missing)}; include it in the selection"
                )
        return selected

    def run_job(self, job: Job, context: RunContext) -> JobResult:
        """Run every step of ``job`` in order."""
        logger.info("🔄 Running job: %s", job.display_name)
        state = JobState.start(job, context)

        step_results = []
        self.temp_dir = Path(tempfile.mkdtemp(prefix=f"pipeline-{job.id}-"))
        try:
            for index, step in enumerate(job.steps):
                step_results.append(self._run_step(step, index, state))
        finally:
            # Removes credential files written by auth actions
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            self.temp_dir = None

        if state.failed:
            logger.failure("❌ Job '%s' failed", job.id)
            return JobResult(job.id, JobStatus.FAILURE, step_results)

        logger.success("✅ Job '%s' succeeded", job.id)
        return JobResult(job.id, JobStatus.SUCCESS, step_results)

    def _run_step(self, step: Step, index: int, state: JobState) -> StepResult:
        if not evaluate_condition(step.condition, state.failed):
            logger.notice("⏭️  Skipping step: %s", step.name)
            state.record_step(step.id, {}, StepStatus.SKIPPED.value, StepStatus.SKIPPED.value)
            return StepResult(step.name, step.id, StepStatus.SKIPPED, StepStatus.SKIPPED)

        logger.info("▶️  %s", step.name)
        started = time.time()
        outputs: Dict[str, str] = {}
        try:
            if step.kind == "run":
                success, outputs, message = self._run_script(step, index, state)
            else:
                success, outputs, message = self._run_action(step, state)
        except STEP_ERRORS as e:
            success, message = False, str(e)

        outcome = StepStatus.SUCCESS if success else StepStatus.FAILURE
        conclusion = outcome
        if not success:
            if step.continue_on_error:
                conclusion = StepStatus.SUCCESS
                logger.warning("⚠️  Step '%s' failed, continuing: %s", step.name, message)
            else:
                state.failed = True
                logger.failure("❌ Step '%s' failed: %s", step.name, message)
        else:
            logger.success("✅ %s", step.name)

        state.record_step(step.id, outputs, outcome.value, conclusion.value)
        return StepResult(
            name=step.name,
            step_id=step.id,
            outcome=outcome,
            conclusion=conclusion,
            duration=time.time() - started,
            message=message,
            outputs=dict(outputs),
        )

    def _run_script(
        self, step: Step, index: int, state: JobState
    ) -> Tuple[bool, Dict[str, str], str]:
        step_env = render_mapping(step.env, state.namespace())
        namespace = state.namespace(step_env)
        script = render(step.run, namespace)

        cwd = self.workspace
        if step.working_directory:
            cwd = self.workspace / render(step.working_directory, namespace)

        prefix = self.temp_dir / f"{state.job.id}-{index}-{uuid.uuid4().hex[:8]}"
        env_file = Path(f"{prefix}.env")
        output_file = Path(f"{prefix}.output")
        env_file.touch()
        output_file.touch()

        env = self.process_env(state, step_env)
        env["PIPELINE_ENV"] = str(env_file)
        env["PIPELINE_OUTPUT"] = str(output_file)

        result = self.run_command(
            self.shell + [script],
            cwd=cwd,
            timeout=self.step_timeout_seconds(step),
            env=env,
        )
        if result.stdout:
            logger.info("%s", result.stdout.rstrip())

        state.export_env(load_env_file(str(env_file)))
        outputs = load_env_file(str(output_file))

        if result.returncode != 0:
            if result.stderr:
                logger.error("%s", result.stderr.rstrip())
            return False, outputs, f"exit code {result.returncode}"
        if self.verbose and result.stderr:
            logger.info("%s", result.stderr.rstrip())
        return True, outputs, ""

    def _run_action(self, step: Step, state: JobState) -> Tuple[bool, Dict[str, str], str]:
        action = get_action_class(step.uses)(self)
        step_env = render_mapping(step.env, state.namespace())
        inputs = render_mapping(step.with_, state.namespace(step_env))

        result = action.execute(step, inputs, state)
        if result.env:
            state.export_env(result.env)
        return result.success, result.outputs, result.message

    def step_timeout_seconds(self, step: Step) -> Optional[int]:
        minutes = step.timeout_minutes
        if minutes is None:
            minutes = self.default_timeout_minutes
        return int(minutes * 60) if minutes else None

    def render_job(self, job_id: str, sha: Optional[str] = None) -> List[Tuple[str, str]]:
        """
        Render the commands of a job without running anything.

        Missing secrets and values that only exist at run time (step outputs)
        are shown as ``<context.name>`` placeholders.
        """
        job = self.pipeline.get_job(job_id)
        context = build_run_context(
            self.pipeline,
            self.config,
            "push",
            resolve_branch(None, str(self.workspace)),
            sha=sha,
            allow_missing_secrets=True,
        )
        state = JobState.start(job, self._with_secret_placeholders(context))

        rendered = []
        for step in job.steps:
            step_env = render_mapping(step.env, state.namespace(), placeholders=True)
            namespace = state.namespace(step_env)
            if step.kind == "run":
                text = render(step.run, namespace, placeholders=True)
            else:
                inputs = render_mapping(step.with_, namespace, placeholders=True)
                args = " ".join(f"{key}={value}" for key, value in inputs.items())
                text = f"uses {step.uses} {args}".rstrip()
            rendered.append((step.name, text))
        return rendered

    @staticmethod
    def _with_secret_placeholders(context: RunContext) -> RunContext:
        secrets = {
            name: value or f"<secrets.{name}>" for name, value in context.secrets.items()
        }
        return dataclasses.replace(context, secrets=secrets)

    def _save_pipeline_report(self, result: RunResult) -> None:
        """Save pipeline execution report."""
        report = {
            "pipeline": result.pipeline,
            "sha": result.sha,
            "started_at": result.started_at,
            "finished_at": result.finished_at,
            "overall_success": result.success,
            "dry_run": self.dry_run,
            "jobs": [
                {
                    "job": job.job_id,
                    "status": job.status.value,
                    "message": job.message,
                    "steps": [
                        {
                            "name": step.name,
                            "id": step.step_id,
                            "outcome": step.outcome.value,
                            "conclusion": step.conclusion.value,
                            "duration": round(step.duration, 3),
                            "message": step.message,
                            "outputs": step.outputs,
                        }
                        for step in job.steps
                    ],
                }
                for job in result.jobs
            ],
        }

        slug = re.sub(r"[^a-z0-9]+", "-", result.pipeline.lower()).strip("-") or "pipeline"
        report_file = self.reports_dir / f"{slug}-report.json"
        try:
            self.reports_dir.mkdir(parents=True, exist_ok=True)
            report_file.write_text(
                mask_secrets(json.dumps(report, indent=2, default=str)), encoding="utf-8"
            )
            logger.debug("📄 Pipeline report saved to: %s", report_file)
        except OSError as e:
            logger.warning("Failed to save pipeline report: %s", e)
