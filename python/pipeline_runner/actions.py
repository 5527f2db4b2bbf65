"""
Built-in actions for ``uses:`` steps.
Every action wraps an external tool; none of them reimplements it.
"""

import glob
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

import requests

from colored_logger import get_colored_logger, register_secret

from .quality_gate import QualityGateError, fetch_quality_gate_status, gate_exit_code

if TYPE_CHECKING:
    from .context import JobState
    from .manifest import Step
    from .runner import PipelineRunner

logger = get_colored_logger(__name__)


class ActionError(Exception):
    """Raised when an action cannot run with the inputs it was given."""


@dataclass
class ActionResult:
    success: bool
    outputs: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    message: str = ""


class BaseAction:
    """Base class for all built-in actions."""

    name = ""
    required_inputs: Tuple[str, ...] = ()
    optional_inputs: Tuple[str, ...] = ()
    # Env names this action adds to the job env
    exports: Tuple[str, ...] = ()
    # Workflow permissions the action needs, e.g. {"id-token": "write"}
    permissions: Dict[str, str] = {}

    def __init__(self, runner: "PipelineRunner"):
        self.runner = runner
        self.config = runner.config

    def execute(self, step: "Step", inputs: Dict[str, str], state: "JobState") -> ActionResult:
        """Check inputs, then run the action."""
        missing = [name for name in self.required_inputs if not inputs.get(name)]
        if missing:
            raise ActionError(
                f"Action '{self.name}' is missing required input(s): {', '.join(missing)}"
            )

        known = set(self.required_inputs) | set(self.optional_inputs)
        for name in inputs:
            if name not in known:
                logger.warning("Action '%s' ignores unexpected input '%s'", self.name, name)

        return self.run(step, inputs, state)

    def run(self, step: "Step", inputs: Dict[str, str], state: "JobState") -> ActionResult:
        """Run the action. Must be implemented by subclasses."""
        raise NotImplementedError

    def _command(
        self, cmd: List[str], step: "Step", state: "JobState"
    ) -> subprocess.CompletedProcess:
        return self.runner.run_command(
            cmd,
            cwd=state.context.workspace,
            timeout=self.runner.step_timeout_seconds(step),
            env=self.runner.process_env(state),
        )

    @staticmethod
    def _log_output(result: subprocess.CompletedProcess) -> None:
        if result.stdout:
            logger.info("%s", result.stdout.rstrip())
        if result.returncode != 0 and result.stderr:
            logger.error("%s", result.stderr.rstrip())


class CommitHashAction(BaseAction):
    """Exposes the triggering commit as long and short hashes."""

    name = "commit-hash"

    def run(self, step, inputs, state):
        sha = state.context.sha
        short = state.context.github["short_sha"]
        logger.info("📌 Commit %s", short)
        return ActionResult(True, outputs={"long": sha, "short": short, "hash": sha})


class CheckoutAction(BaseAction):
    """Makes sure the workspace holds the triggering commit."""

    name = "checkout"
    optional_inputs = ("ref", "fetch")

    def run(self, step, inputs, state):
        ref = inputs.get("ref") or state.context.sha

        result = self._command(["git", "rev-parse", "HEAD"], step, state)
        if result.returncode != 0:
            return ActionResult(
                False, message=f"Workspace {state.context.workspace} is not a git checkout"
            )

        head = result.stdout.strip()
        if head and (head == ref or head.startswith(ref)):
            logger.info("📥 Workspace already at %s", ref[:7])
            return ActionResult(True, outputs={"ref": head})

        if _truthy(inputs.get("fetch")):
            fetched = self._command(["git", "fetch", "--depth", "1", "origin", ref], step, state)
            if fetched.returncode != 0:
                return ActionResult(False, message=f"Failed to fetch {ref} from origin")

        checked_out = self._command(["git", "checkout", "--detach", ref], step, state)
        if checked_out.returncode != 0:
            self._log_output(checked_out)
            return ActionResult(False, message=f"Failed to check out {ref}")

        logger.info("📥 Checked out %s", ref[:7])
        return ActionResult(True, outputs={"ref": ref})


class SetupJavaAction(BaseAction):
    """Selects a JDK and verifies its major version."""

    name = "setup-java"
    required_inputs = ("java-version",)
    optional_inputs = ("distribution", "java-home", "architecture")
    exports = ("JAVA_HOME", "PATH")

    VERSION_PATTERN = re.compile(r'version "(\d+)(?:\.(\d+))?')

    def run(self, step, inputs, state):
        wanted = inputs["java-version"].split(".")[0]
        distribution = inputs.get("distribution", "temurin")
        architecture = (inputs.get("architecture") or "x64").upper()

        java_home = inputs.get("java-home") or self._find_java_home(wanted, architecture, state)
        env: Dict[str, str] = {}
        java_bin = "java"
        if java_home:
            java_bin = str(Path(java_home) / "bin" / "java")
            path = state.env.get("PATH", os.environ.get("PATH", ""))
            env = {
                "JAVA_HOME": java_home,
                "PATH": f"{Path(java_home) / 'bin'}{os.pathsep}{path}",
            }
        else:
            logger.warning(
                "No JDK %s home found (set JAVA_HOME_%s_%s or 'java-home'), using java from PATH",
                wanted,
                wanted,
                architecture,
            )

        logger.info("☕ Setting up %s JDK %s", distribution, wanted)
        if self.runner.dry_run:
            return ActionResult(True, outputs={"version": wanted, "path": java_home or ""}, env=env)

        try:
            result = self._command([java_bin, "-version"], step, state)
        except FileNotFoundError:
            return ActionResult(False, message=f"Java executable not found: {java_bin}")
        if result.returncode != 0:
            return ActionResult(False, message=f"'{java_bin} -version' failed")

        # java -version reports on stderr
        found = self.parse_major_version(result.stderr or result.stdout)
        if found != wanted:
            return ActionResult(
                False, message=f"Expected JDK {wanted} but found {found or 'unknown'}"
            )

        return ActionResult(True, outputs={"version": found, "path": java_home or ""}, env=env)

    @staticmethod
    def _find_java_home(version: str, architecture: str, state) -> Optional[str]:
        key = f"JAVA_HOME_{version}_{architecture}"
        return state.env.get(key) or os.environ.get(key)

    @classmethod
    def parse_major_version(cls, text: str) -> Optional[str]:
        match = cls.VERSION_PATTERN.search(text or "")
        if not match:
            return None
        major, minor = match.group(1), match.group(2)
        # Pre-9 JDKs report 1.<major>
        if major == "1" and minor:
            return minor
        return major


class UploadArtifactAction(BaseAction):
    """Copies build outputs into the run's artifacts directory."""

    name = "upload-artifact"
    required_inputs = ("path",)
    optional_inputs = ("name", "if-no-files-found")

    def run(self, step, inputs, state):
        name = inputs.get("name") or "artifact"
        mode = (inputs.get("if-no-files-found") or "warn").lower()
        if mode not in ("warn", "error", "ignore"):
            raise ActionError(f"Invalid if-no-files-found value: {mode}")

        workspace = state.context.workspace
        patterns = [p.strip() for p in inputs["path"].splitlines() if p.strip()]
        files: List[Path] = []
        for pattern in patterns:
            for match in sorted(glob.glob(str(workspace / pattern), recursive=True)):
                if os.path.isfile(match):
                    files.append(Path(match))

        if not files:
            message = f"No files found for artifact '{name}' ({', '.join(patterns)})"
            if mode == "error":
                return ActionResult(False, message=message)
            if mode == "warn":
                logger.warning(message)
            return ActionResult(True, outputs={"file-count": "0"})

        destination = self.runner.artifacts_dir / name
        if self.runner.dry_run:
            logger.info("[DRY RUN] Would upload %d file(s) to %s", len(files), destination)
            return ActionResult(True, outputs={"artifact-path": str(destination), "file-count": str(len(files))})

        for source in files:
            try:
                relative = source.relative_to(workspace)
            except ValueError:
                relative = Path(source.name)
            target = destination / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)

        logger.info("📦 Uploaded %d file(s) as artifact '%s'", len(files), name)
        return ActionResult(
            True, outputs={"artifact-path": str(destination), "file-count": str(len(files))}
        )


class SonarQualityGateAction(BaseAction):
    """Fails the step unless the project's quality gate status is OK."""

    name = "sonar-quality-gate"
    required_inputs = ("host-url", "project-key", "token")

    def run(self, step, inputs, state):
        if self.runner.dry_run:
            logger.info("[DRY RUN] Would check quality gate of %s", inputs["project-key"])
            return ActionResult(True, outputs={"status": ""})

        timeout = self.config.get("quality_gate", {}).get("timeout", 30)
        try:
            status = fetch_quality_gate_status(
                inputs["host-url"], inputs["project-key"], inputs["token"], timeout=timeout
            )
        except QualityGateError as e:
            return ActionResult(False, message=str(e))

        if gate_exit_code(status) == 0:
            logger.info("SonarQube quality gate check passed.")
            return ActionResult(True, outputs={"status": status})
        return ActionResult(
            False,
            outputs={"status": status},
            message=f"SonarQube quality gate check failed (status {status})",
        )


class GcpAuthAction(BaseAction):
    """Authenticates gcloud through workload identity federation."""

    name = "gcp-auth"
    required_inputs = ("workload_identity_provider", "service_account")
    optional_inputs = ("token_format", "project_id", "audience", "id-token-file")
    permissions = {"id-token": "write"}
    exports = (
        "GOOGLE_APPLICATION_CREDENTIALS",
        "CLOUDSDK_AUTH_CREDENTIAL_FILE_OVERRIDE",
        "CLOUDSDK_CORE_PROJECT",
    )

    def run(self, step, inputs, state):
        provider = inputs["workload_identity_provider"]
        service_account = inputs["service_account"]
        token_format = inputs.get("token_format", "")
        if token_format not in ("", "access_token"):
            raise ActionError(f"Unsupported token_format: {token_format}")

        audience = inputs.get("audience") or f"https://iam.googleapis.com/{provider}"

        if self.runner.dry_run:
            logger.info("[DRY RUN] Would authenticate as %s", service_account)
            return ActionResult(True)

        id_token = self._oidc_token(inputs, audience)
        register_secret(id_token)

        creds_dir = self.runner.temp_dir / f"gcp-{state.job.id}"
        creds_dir.mkdir(parents=True, exist_ok=True)
        token_file = creds_dir / "oidc-token"
        creds_file = creds_dir / "credentials.json"
        token_file.write_text(id_token, encoding="utf-8")
        os.chmod(token_file, 0o600)

        result = self._command(
            [
                "gcloud",
                "iam",
                "workload-identity-pools",
                "create-cred-config",
                provider,
                f"--service-account={service_account}",
                f"--credential-source-file={token_file}",
                f"--output-file={creds_file}",
            ],
            step,
            state,
        )
        if result.returncode != 0:
            self._log_output(result)
            return ActionResult(False, message="Failed to create workload identity credentials")

        env = {
            "GOOGLE_APPLICATION_CREDENTIALS": str(creds_file),
            "CLOUDSDK_AUTH_CREDENTIAL_FILE_OVERRIDE": str(creds_file),
        }
        if inputs.get("project_id"):
            env["CLOUDSDK_CORE_PROJECT"] = inputs["project_id"]
        state.export_env(env)

        result = self._command(["gcloud", "auth", "login", f"--cred-file={creds_file}", "--quiet"], step, state)
        if result.returncode != 0:
            self._log_output(result)
            return ActionResult(False, env=env, message="gcloud auth login failed")

        outputs = {"credentials_file_path": str(creds_file)}
        if token_format == "access_token":
            result = self._command(["gcloud", "auth", "print-access-token"], step, state)
            access_token = result.stdout.strip() if result.returncode == 0 else ""
            if not access_token:
                return ActionResult(False, env=env, message="Failed to obtain an access token")
            register_secret(access_token)
            outputs["access_token"] = access_token

        logger.info("🔐 Authenticated to Google Cloud as %s", service_account)
        return ActionResult(True, outputs=outputs, env=env)

    @staticmethod
    def _oidc_token(inputs: Dict[str, str], audience: str) -> str:
        """Read the runner's OIDC token from a file or the runner's token endpoint."""
        token_file = inputs.get("id-token-file")
        if token_file:
            try:
                return Path(token_file).read_text(encoding="utf-8").strip()
            except OSError as e:
                raise ActionError(f"Cannot read OIDC token file {token_file}: {e}") from e

        request_url = os.environ.get("ACTIONS_ID_TOKEN_REQUEST_URL")
        request_token = os.environ.get("ACTIONS_ID_TOKEN_REQUEST_TOKEN")
        if not request_url or not request_token:
            raise ActionError(
                "No OIDC token available: set 'id-token-file' or run where "
                "ACTIONS_ID_TOKEN_REQUEST_URL/ACTIONS_ID_TOKEN_REQUEST_TOKEN are provided"
            )

        try:
            res = requests.get(
                request_url,
                params={"audience": audience},
                headers={"Authorization": f"bearer {request_token}"},
                timeout=10,
            )
            res.raise_for_status()
            payload = res.json()
        except requests.exceptions.RequestException as e:
            raise ActionError(f"Error requesting OIDC token: {e}") from e
        except ValueError as e:
            raise ActionError(f"OIDC token response is not JSON: {e}") from e

        token = payload.get("value") if isinstance(payload, dict) else None
        if not token or not isinstance(token, str):
            raise ActionError("OIDC token response contained no token")
        return token


class TrivyAction(BaseAction):
    """Runs the Trivy vulnerability scanner."""

    name = "trivy"
    required_inputs = ("scan-type",)
    optional_inputs = (
        "scan-ref",
        "trivy-config",
        "format",
        "severity",
        "exit-code",
        "ignore-unfixed",
        "output",
    )

    SCAN_TYPES = ("fs", "image", "repo", "config", "rootfs")

    def run(self, step, inputs, state):
        scan_type = inputs["scan-type"]
        if scan_type not in self.SCAN_TYPES:
            raise ActionError(f"Unsupported Trivy scan type: {scan_type}")

        if not self.runner.check_tool_available("trivy"):
            return ActionResult(False, message="trivy is not installed")

        cmd = self.build_command(inputs, state.context.workspace)
        logger.info("🛡️  Trivy %s scan of %s", scan_type, inputs.get("scan-ref") or ".")
        result = self._command(cmd, step, state)
        self._log_output(result)

        if result.returncode != 0:
            return ActionResult(
                False,
                outputs={"exit-code": str(result.returncode)},
                message=f"Trivy {scan_type} scan reported findings (exit code {result.returncode})",
            )
        return ActionResult(True, outputs={"exit-code": "0"})

    @staticmethod
    def build_command(inputs: Dict[str, str], workspace: Path) -> List[str]:
        cmd = ["trivy", inputs["scan-type"]]

        config_file = inputs.get("trivy-config")
        if config_file:
            if (workspace / config_file).exists():
                cmd.extend(["--config", config_file])
            else:
                logger.warning("Trivy config %s not found, scanning with defaults", config_file)

        cmd.extend(["--format", inputs.get("format") or "table"])
        if inputs.get("severity"):
            cmd.extend(["--severity", inputs["severity"]])
        # Report-only unless the manifest asks for a failing exit code
        cmd.extend(["--exit-code", inputs.get("exit-code") or "0"])
        if _truthy(inputs.get("ignore-unfixed")):
            cmd.append("--ignore-unfixed")
        if inputs.get("output"):
            cmd.extend(["--output", inputs["output"]])
        cmd.append(inputs.get("scan-ref") or ".")
        return cmd


class VmAddressAction(BaseAction):
    """Looks up the external IP of a Compute Engine instance."""

    name = "gcloud-vm-ip"
    required_inputs = ("instance", "project", "zone")
    optional_inputs = ("fallback-ip",)
    exports = ("VM_IP",)

    IP_FORMAT = "get(networkInterfaces[0].accessConfigs[0].natIP)"

    def run(self, step, inputs, state):
        result = self._command(
            [
                "gcloud",
                "compute",
                "instances",
                "describe",
                inputs["instance"],
                f"--project={inputs['project']}",
                f"--zone={inputs['zone']}",
                f"--format={self.IP_FORMAT}",
            ],
            step,
            state,
        )

        ip = result.stdout.strip() if result.returncode == 0 and result.stdout else ""
        if not ip and inputs.get("fallback-ip"):
            logger.warning("Using fallback IP for instance %s", inputs["instance"])
            ip = inputs["fallback-ip"]
        if not ip and self.runner.dry_run:
            ip = "<vm-ip>"
        if not ip:
            self._log_output(result)
            return ActionResult(
                False, message=f"Could not determine external IP of {inputs['instance']}"
            )

        logger.info("🌐 Instance %s is reachable at %s", inputs["instance"], ip)
        return ActionResult(True, outputs={"ip": ip}, env={"VM_IP": ip})


def _truthy(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in ("true", "yes", "1", "on")


ACTIONS = {
    action.name: action
    for action in (
        CommitHashAction,
        CheckoutAction,
        SetupJavaAction,
        UploadArtifactAction,
        SonarQualityGateAction,
        GcpAuthAction,
        TrivyAction,
        VmAddressAction,
    )
}


def get_action_class(name: str):
    """Look up a registered action class; raises ActionError when unknown."""
    try:
        return ACTIONS[name]
    except KeyError:
        raise ActionError(f"Unknown action '{name}'") from None
