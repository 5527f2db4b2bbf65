"""
Tests for the PipelineRunner.

Tests cover:
- Job sequencing and the needs gate between ci and deploy
- Step conditions, continue-on-error and env propagation
- The image reference shared by build, scan, push and deploy
- Dry runs, rendering and the JSON report
"""

import json
import os
import subprocess
from pathlib import Path
from unittest.mock import patch

from pipeline_runner.config import ConfigError
from pipeline_runner.manifest import ManifestError, load_manifest, parse_manifest
from pipeline_runner.runner import JobStatus, PipelineRunner, StepStatus
from .test_utils import (
    EXPECTED_IMAGE,
    TEST_SECRETS,
    TEST_SHA,
    MockFactory,
    TempDirTestCase,
    TestDataFixtures,
)

VM_IP = "34.1.2.3"

RUNNER_ENV = dict(
    TEST_SECRETS,
    ACTIONS_ID_TOKEN_REQUEST_URL="https://token.actions.example/idtoken",
    ACTIONS_ID_TOKEN_REQUEST_TOKEN="request-token",
)


class FakeTools:
    """Stands in for subprocess.run and requests.get, recording every call."""

    def __init__(self, gate_status="OK", failing=(), exports=None):
        self.commands = []
        self.gate_status = gate_status
        self.failing = failing
        # script fragment -> (env lines, output lines) written by the fake shell
        self.exports = exports or {}

    def run(self, cmd, **kwargs):
        self.commands.append(cmd)
        joined = " ".join(cmd)
        stdout, stderr = "", ""

        if any(fragment in joined for fragment in self.failing):
            return MockFactory.create_completed_process(1, stderr="boom", args=cmd)

        if cmd[:3] == ["git", "rev-parse", "HEAD"]:
            stdout = f"{TEST_SHA}\n"
        elif cmd[0].endswith("java") and cmd[1:] == ["-version"]:
            stderr = 'openjdk version "17.0.9" 2023-10-17'
        elif cmd[:3] == ["gcloud", "auth", "print-access-token"]:
            stdout = "ya29.access-token\n"
        elif cmd[:4] == ["gcloud", "compute", "instances", "describe"]:
            stdout = f"{VM_IP}\n"

        for fragment, (env_lines, output_lines) in self.exports.items():
            if fragment in joined:
                env = kwargs["env"]
                Path(env["PIPELINE_ENV"]).write_text(env_lines, encoding="utf-8")
                Path(env["PIPELINE_OUTPUT"]).write_text(output_lines, encoding="utf-8")

        return MockFactory.create_completed_process(0, stdout=stdout, stderr=stderr, args=cmd)

    def get(self, url, **kwargs):
        if "qualitygates" in url:
            return MockFactory.create_http_response(
                json_data={"projectStatus": {"status": self.gate_status}}
            )
        return MockFactory.create_http_response(json_data={"value": "jwt-from-runner"})

    def scripts(self):
        """Scripts passed to the shell by run steps."""
        return [cmd[-1] for cmd in self.commands if cmd[0] == "bash"]

    def ran(self, fragment):
        return any(fragment in " ".join(cmd) for cmd in self.commands)


class RunnerTestCase(TempDirTestCase):
    def setUp(self):
        super().setUp()
        self.config = MockFactory.create_config(self.temp_dir)

    def run_pipeline(self, pipeline, tools, environ=None, **kwargs):
        runner = PipelineRunner(self.config, pipeline)
        kwargs.setdefault("branch", "feature")
        kwargs.setdefault("sha", TEST_SHA)
        with patch.dict(os.environ, environ or RUNNER_ENV), patch(
            "pipeline_runner.runner.subprocess.run", side_effect=tools.run
        ), patch("requests.get", side_effect=tools.get):
            return runner.run(**kwargs)


class TestDefaultPipeline(RunnerTestCase):
    def setUp(self):
        super().setUp()
        self.pipeline = load_manifest()

    def test_happy_path_runs_both_jobs(self):
        tools = FakeTools()

        result = self.run_pipeline(self.pipeline, tools)

        self.assertTrue(result.triggered)
        self.assertTrue(result.success)
        self.assertEqual(
            [(job.job_id, job.status) for job in result.jobs],
            [("ci", JobStatus.SUCCESS), ("deploy", JobStatus.SUCCESS)],
        )
        self.assertEqual(len(result.job("ci").steps), 15)

    def test_image_reference_identical_for_build_scan_push(self):
        tools = FakeTools()

        self.run_pipeline(self.pipeline, tools)

        scripts = tools.scripts()
        self.assertIn(f'docker build -t "{EXPECTED_IMAGE}" .', scripts)
        self.assertIn(f'docker push "{EXPECTED_IMAGE}"', scripts)
        scans = [cmd for cmd in tools.commands if cmd[:2] == ["trivy", "image"]]
        self.assertEqual(len(scans), 1)
        self.assertEqual(scans[0][-1], EXPECTED_IMAGE)

    def test_deploy_command_uses_looked_up_ip_and_same_image(self):
        tools = FakeTools()

        self.run_pipeline(self.pipeline, tools)

        expected = (
            f"gcloud compute ssh root@{VM_IP} --project=cicddemo-451910 --zone=us-central1-a "
            f'--command "docker pull {EXPECTED_IMAGE} && docker run -d -p 80:80 {EXPECTED_IMAGE}"'
        )
        self.assertEqual(tools.scripts()[-1], expected)

    def test_sonar_scan_gets_secrets(self):
        tools = FakeTools()

        self.run_pipeline(self.pipeline, tools)

        sonar = [s for s in tools.scripts() if "sonar-maven-plugin" in s][0]
        self.assertIn("-Dsonar.projectKey=demo-project", sonar)
        self.assertIn("-Dsonar.host.url=https://sonar.example.com", sonar)
        self.assertIn("-Dsonar.login=sonar-token-123", sonar)

    def test_failed_image_scan_blocks_push_and_deploy(self):
        tools = FakeTools(failing=("trivy image",))

        result = self.run_pipeline(self.pipeline, tools)

        self.assertFalse(result.success)
        ci = result.job("ci")
        self.assertEqual(ci.status, JobStatus.FAILURE)
        self.assertEqual(ci.steps[-2].outcome, StepStatus.FAILURE)
        self.assertEqual(ci.steps[-1].outcome, StepStatus.SKIPPED)
        self.assertFalse(tools.ran("docker push"))
        self.assertEqual(result.job("deploy").status, JobStatus.SKIPPED)
        self.assertFalse(tools.ran("gcloud compute ssh"))

    def test_failed_quality_gate_stops_ci(self):
        tools = FakeTools(gate_status="ERROR")

        result = self.run_pipeline(self.pipeline, tools)

        ci = result.job("ci")
        gate = [s for s in ci.steps if s.step_id == "quality-gate"][0]
        self.assertEqual(gate.outcome, StepStatus.FAILURE)
        self.assertEqual(gate.outputs["status"], "ERROR")
        self.assertFalse(tools.ran("mvn package"))
        self.assertFalse(tools.ran("docker build"))
        self.assertEqual(result.job("deploy").status, JobStatus.SKIPPED)

    def test_malformed_gate_response_fails_only_that_step(self):
        tools = FakeTools()
        tools.get = lambda url, **kwargs: MockFactory.create_http_response(json_data=["unexpected"])

        result = self.run_pipeline(self.pipeline, tools)

        gate = [s for s in result.job("ci").steps if s.step_id == "quality-gate"][0]
        self.assertEqual(gate.outcome, StepStatus.FAILURE)
        self.assertIn("no status", gate.message)
        self.assertFalse(result.success)
        self.assertEqual(result.job("deploy").status, JobStatus.SKIPPED)

    def test_failing_unit_tests_abort_remaining_steps(self):
        tools = FakeTools(failing=("mvn test",))

        result = self.run_pipeline(self.pipeline, tools)

        statuses = [step.outcome for step in result.job("ci").steps]
        self.assertEqual(statuses[3], StepStatus.FAILURE)
        self.assertTrue(all(status == StepStatus.SKIPPED for status in statuses[4:]))

    def test_untriggered_branch_does_nothing(self):
        tools = FakeTools()

        result = self.run_pipeline(self.pipeline, tools, branch="main")

        self.assertFalse(result.triggered)
        self.assertTrue(result.success)
        self.assertEqual(tools.commands, [])

    def test_force_ignores_trigger(self):
        tools = FakeTools()

        result = self.run_pipeline(self.pipeline, tools, branch="main", force=True)

        self.assertTrue(result.triggered)

    def test_missing_secret_fails_before_any_step(self):
        tools = FakeTools()
        environ = dict(RUNNER_ENV)
        del environ["VM_NAME"]

        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigError):
                self.run_pipeline(self.pipeline, tools, environ=environ)

        self.assertEqual(tools.commands, [])

    def test_deploy_alone_is_rejected(self):
        with self.assertRaises(ConfigError):
            self.run_pipeline(self.pipeline, FakeTools(), jobs=["deploy"])

    def test_ci_alone(self):
        result = self.run_pipeline(self.pipeline, FakeTools(), jobs=["ci"])

        self.assertEqual([job.job_id for job in result.jobs], ["ci"])

    def test_unknown_job_rejected(self):
        with self.assertRaises(ConfigError):
            self.run_pipeline(self.pipeline, FakeTools(), jobs=["release"])

    def test_report_written(self):
        self.run_pipeline(self.pipeline, FakeTools())

        report_file = Path(self.temp_dir).resolve() / "pipeline-reports" / "java-ci-with-maven-report.json"
        report = json.loads(report_file.read_text(encoding="utf-8"))
        self.assertTrue(report["overall_success"])
        self.assertEqual(report["sha"], TEST_SHA)
        self.assertEqual([job["job"] for job in report["jobs"]], ["ci", "deploy"])
        # Access token output is masked
        self.assertNotIn("ya29.access-token", report_file.read_text(encoding="utf-8"))

    def test_dry_run_executes_nothing(self):
        runner = PipelineRunner(self.config, self.pipeline, dry_run=True)

        with patch.dict(os.environ, {}, clear=True), patch(
            "pipeline_runner.runner.subprocess.run"
        ) as mock_run, patch("requests.get") as mock_get:
            result = runner.run(branch="feature", sha=TEST_SHA)

        self.assertTrue(result.success)
        mock_run.assert_not_called()
        mock_get.assert_not_called()

    def test_invalid_manifest_rejected(self):
        data = TestDataFixtures.get_minimal_manifest()
        data["jobs"]["build"]["steps"][0]["run"] = "echo ${{ secrets.NOPE }}"
        runner = PipelineRunner(self.config, parse_manifest(data))

        with self.assertRaises(ManifestError):
            runner.run(branch="main", sha=TEST_SHA)


class TestStepSemantics(RunnerTestCase):
    ENV = {"API_TOKEN": "tok-123"}

    def _pipeline(self, build_steps, ship_steps=None):
        data = TestDataFixtures.get_minimal_manifest()
        data["jobs"]["build"]["steps"] = build_steps
        if ship_steps is not None:
            data["jobs"]["ship"]["steps"] = ship_steps
        return parse_manifest(data)

    def test_continue_on_error(self):
        pipeline = self._pipeline(
            [
                {"name": "flaky", "run": "./flaky.sh", "continue-on-error": True},
                {"name": "next", "run": "echo next"},
            ]
        )

        result = self.run_pipeline(pipeline, FakeTools(failing=("flaky",)), environ=self.ENV, branch="main")

        flaky = result.job("build").steps[0]
        self.assertEqual(flaky.outcome, StepStatus.FAILURE)
        self.assertEqual(flaky.conclusion, StepStatus.SUCCESS)
        self.assertEqual(result.job("build").steps[1].outcome, StepStatus.SUCCESS)
        self.assertEqual(result.job("ship").status, JobStatus.SUCCESS)

    def test_failure_and_always_conditions(self):
        pipeline = self._pipeline(
            [
                {"name": "break", "run": "exit 1"},
                {"name": "skipped", "run": "echo skipped"},
                {"name": "on failure", "run": "echo cleanup", "if": "failure()"},
                {"name": "always", "run": "echo always", "if": "${{ always() }}"},
            ]
        )

        result = self.run_pipeline(pipeline, FakeTools(failing=("exit 1",)), environ=self.ENV, branch="main")

        outcomes = [step.outcome for step in result.job("build").steps]
        self.assertEqual(
            outcomes,
            [StepStatus.FAILURE, StepStatus.SKIPPED, StepStatus.SUCCESS, StepStatus.SUCCESS],
        )
        self.assertEqual(result.job("build").status, JobStatus.FAILURE)
        self.assertEqual(result.job("ship").status, JobStatus.SKIPPED)

    def test_env_and_outputs_propagate_within_job(self):
        pipeline = self._pipeline(
            [
                {"name": "produce", "id": "produce", "run": "produce"},
                {"name": "consume", "run": "consume ${{ steps.produce.outputs.version }}"},
            ]
        )
        tools = FakeTools(exports={"produce": ("BUILD_NUMBER=42\n", "version=1.2.3\n")})

        with patch.dict(os.environ, self.ENV), patch(
            "pipeline_runner.runner.subprocess.run", side_effect=tools.run
        ) as mock_run:
            runner = PipelineRunner(self.config, pipeline)
            result = runner.run(branch="main", sha=TEST_SHA)

        self.assertTrue(result.success)
        self.assertIn("consume 1.2.3", tools.scripts())
        consume_env = mock_run.call_args_list[1][1]["env"]
        self.assertEqual(consume_env["BUILD_NUMBER"], "42")
        self.assertEqual(result.job("build").steps[0].outputs, {"version": "1.2.3"})

    def test_exports_do_not_cross_jobs(self):
        pipeline = self._pipeline(
            [{"name": "produce", "run": "produce"}],
            [{"name": "ship", "run": "ship"}],
        )
        tools = FakeTools(exports={"produce": ("LEAK=1\n", "")})

        with patch.dict(os.environ, self.ENV), patch(
            "pipeline_runner.runner.subprocess.run", side_effect=tools.run
        ) as mock_run:
            PipelineRunner(self.config, pipeline).run(branch="main", sha=TEST_SHA)

        ship_env = mock_run.call_args_list[-1][1]["env"]
        self.assertNotIn("LEAK", ship_env)

    def test_timeout_fails_step(self):
        pipeline = self._pipeline([{"name": "slow", "run": "sleep 999", "timeout-minutes": 1}])

        def too_slow(cmd, **kwargs):
            self.assertEqual(kwargs["timeout"], 60)
            raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

        with patch.dict(os.environ, self.ENV), patch(
            "pipeline_runner.runner.subprocess.run", side_effect=too_slow
        ):
            result = PipelineRunner(self.config, pipeline).run(branch="main", sha=TEST_SHA)

        self.assertEqual(result.job("build").steps[0].outcome, StepStatus.FAILURE)
        self.assertFalse(result.success)

    def _run_with_stderr(self, verbose):
        pipeline = self._pipeline([{"name": "package", "run": "mvn package"}])

        with patch.dict(os.environ, self.ENV), patch(
            "pipeline_runner.runner.subprocess.run",
            return_value=MockFactory.create_completed_process(stderr="Downloading plugin"),
        ), patch("pipeline_runner.runner.logger") as mock_logger:
            PipelineRunner(self.config, pipeline, verbose=verbose).run(
                branch="main", sha=TEST_SHA, jobs=["build"]
            )
        return mock_logger

    def test_verbose_logs_stderr_of_successful_steps(self):
        mock_logger = self._run_with_stderr(verbose=True)

        mock_logger.info.assert_any_call("%s", "Downloading plugin")

    def test_quiet_run_hides_stderr_of_successful_steps(self):
        mock_logger = self._run_with_stderr(verbose=False)

        self.assertNotIn(("%s", "Downloading plugin"), [c.args for c in mock_logger.info.call_args_list])

    def test_shell_and_workspace(self):
        pipeline = self._pipeline([{"name": "hello", "run": "echo ${{ env.GREETING }}"}])

        with patch.dict(os.environ, self.ENV), patch(
            "pipeline_runner.runner.subprocess.run",
            return_value=MockFactory.create_completed_process(),
        ) as mock_run:
            PipelineRunner(self.config, pipeline).run(branch="main", sha=TEST_SHA, jobs=["build"])

        cmd = mock_run.call_args[0][0]
        self.assertEqual(cmd, ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c", "echo hello"])
        self.assertEqual(Path(mock_run.call_args[1]["cwd"]), Path(self.temp_dir).resolve())


class TestRenderJob(RunnerTestCase):
    def test_render_deploy_with_placeholders(self):
        runner = PipelineRunner(self.config, load_manifest())

        with patch.dict(os.environ, {}, clear=True):
            rendered = dict(runner.render_job("deploy", sha=TEST_SHA))

        self.assertEqual(
            rendered["Deploy Docker image to VM"],
            "gcloud compute ssh root@<steps.vm-ip.outputs.ip> --project=cicddemo-451910 "
            "--zone=us-central1-a "
            f'--command "docker pull {EXPECTED_IMAGE} && docker run -d -p 80:80 {EXPECTED_IMAGE}"',
        )
        self.assertIn("instance=<secrets.VM_NAME>", rendered["Get VM External IP Address"])

    def test_render_with_config_overrides(self):
        self.config["env"] = {"REGION": "europe-west1"}
        runner = PipelineRunner(self.config, load_manifest())

        with patch.dict(os.environ, TEST_SECRETS):
            rendered = dict(runner.render_job("ci", sha="abc"))

        self.assertEqual(
            rendered["Authenticate Docker to Artifact Registry"],
            "gcloud auth configure-docker europe-west1-docker.pkg.dev --quiet",
        )
        self.assertEqual(
            rendered["Build container image"],
            'docker build -t "europe-west1-docker.pkg.dev/cicddemo-451910/my-first-repo/abc" .',
        )
