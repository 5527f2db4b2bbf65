"""
CLI interface for the pipeline runner.

Provides command-line tools for:
- Running the pipeline (or selected jobs) for a push event
- Listing, validating and rendering a manifest
- Checking a SonarQube quality gate on its own
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from colored_logger import get_colored_logger, mask_secrets, register_secret, setup_colored_logging

from .config import ConfigError, load_config
from .manifest import ManifestError, load_manifest
from .quality_gate import QualityGateError, fetch_quality_gate_status, gate_exit_code
from .runner import PipelineRunner
from .validation import validate_pipeline

logger = get_colored_logger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


class PipelineCLI:
    """Command-line interface for the pipeline runner."""

    def create_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="pipeline-runner",
            description="Run the build, scan and deploy pipeline defined in a workflow manifest",
        )
        parser.add_argument("--config", help="Path to pipeline-config.yml")
        parser.add_argument("--manifest", help="Workflow manifest (defaults to the bundled Java pipeline)")
        parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

        subparsers = parser.add_subparsers(dest="command", help="Available commands")

        run_parser = subparsers.add_parser("run", help="Run the pipeline")
        run_parser.add_argument(
            "--job",
            action="append",
            dest="jobs",
            help="Only run this job (repeatable); its needs must be selected too",
        )
        run_parser.add_argument("--event", default="push", help="Triggering event (default: push)")
        run_parser.add_argument("--branch", help="Pushed branch (default: from GITHUB_REF_NAME or git)")
        run_parser.add_argument("--sha", help="Commit SHA (default: from GITHUB_SHA or git)")
        run_parser.add_argument(
            "--dry-run", action="store_true", help="Log commands instead of running them"
        )
        run_parser.add_argument(
            "--force", action="store_true", help="Run even if the trigger does not match"
        )

        subparsers.add_parser("list", help="List jobs and steps")
        subparsers.add_parser("validate", help="Check the manifest for undeclared references")

        render_parser = subparsers.add_parser("render", help="Print the rendered commands of a job")
        render_parser.add_argument("--job", default=None, help="Job to render (default: all)")
        render_parser.add_argument("--sha", help="Commit SHA used for derived values")

        gate_parser = subparsers.add_parser("gate", help="Check a SonarQube quality gate")
        gate_parser.add_argument("--host-url", default=os.environ.get("SONAR_HOST_URL"))
        gate_parser.add_argument("--project-key", default=os.environ.get("SONAR_PROJECTKEY"))
        gate_parser.add_argument("--token", default=os.environ.get("SONAR_TOKEN"))

        return parser

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI with given arguments."""
        parser = self.create_parser()
        parsed_args = parser.parse_args(args)

        if parsed_args.verbose:
            logging.getLogger().setLevel(logging.DEBUG)

        if not parsed_args.command:
            parser.print_help()
            return EXIT_SUCCESS

        try:
            return self._execute_command(parsed_args)
        except (ConfigError, ManifestError) as e:
            logger.error("%s", e)
            return EXIT_USAGE

    def _execute_command(self, args: argparse.Namespace) -> int:
        command_map = {
            "run": self._cmd_run,
            "list": self._cmd_list,
            "validate": self._cmd_validate,
            "render": self._cmd_render,
            "gate": self._cmd_gate,
        }

        handler = command_map.get(args.command)
        if not handler:
            logger.error("Unknown command: %s", args.command)
            return EXIT_USAGE

        return handler(args)

    def _runner(self, args: argparse.Namespace, dry_run: bool = False) -> PipelineRunner:
        config = load_config(args.config)
        pipeline = load_manifest(args.manifest or config["global"].get("manifest"))
        return PipelineRunner(config, pipeline, verbose=args.verbose, dry_run=dry_run)

    def _cmd_run(self, args: argparse.Namespace) -> int:
        runner = self._runner(args, dry_run=args.dry_run)
        result = runner.run(
            event=args.event,
            branch=args.branch,
            sha=args.sha,
            jobs=args.jobs,
            force=args.force,
        )

        if result.triggered:
            print(f"\nPipeline: {result.pipeline} ({result.sha[:7]})")
            for job in result.jobs:
                print(f"  {job.job_id}: {job.status.value}")
                for step in job.steps:
                    print(f"    {step.conclusion.value:8} {step.name}")

        return EXIT_SUCCESS if result.success else EXIT_FAILURE

    def _cmd_list(self, args: argparse.Namespace) -> int:
        runner = self._runner(args)
        runner.list_jobs()
        return EXIT_SUCCESS

    def _cmd_validate(self, args: argparse.Namespace) -> int:
        config = load_config(args.config)
        pipeline = load_manifest(args.manifest or config["global"].get("manifest"))
        problems = validate_pipeline(pipeline)
        if problems:
            for problem in problems:
                logger.error("%s", problem)
            return EXIT_FAILURE

        logger.success("Manifest '%s' is valid", pipeline.name)
        return EXIT_SUCCESS

    def _cmd_render(self, args: argparse.Namespace) -> int:
        runner = self._runner(args)
        job_ids = [args.job] if args.job else [job.id for job in runner.pipeline.job_order()]

        for job_id in job_ids:
            print(f"# {job_id}")
            for name, text in runner.render_job(job_id, sha=args.sha):
                print(f"## {name}")
                print(mask_secrets(text))
        return EXIT_SUCCESS

    def _cmd_gate(self, args: argparse.Namespace) -> int:
        if not args.host_url or not args.project_key:
            logger.error("--host-url and --project-key (or SONAR_HOST_URL/SONAR_PROJECTKEY) are required")
            return EXIT_USAGE

        register_secret(args.token or "")
        try:
            status = fetch_quality_gate_status(args.host_url, args.project_key, args.token or "")
        except QualityGateError as e:
            logger.error("%s", e)
            return EXIT_FAILURE

        code = gate_exit_code(status)
        if code == 0:
            logger.success("SonarQube quality gate check passed.")
        else:
            logger.failure("SonarQube quality gate check failed (status %s)", status)
        return code


def main():
    """Main entry point for the pipeline runner CLI."""
    setup_colored_logging()
    cli = PipelineCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
