"""
Shared test utilities and fixtures for pipeline-runner tests.

This module provides common test utilities, mock factories, and base classes
to reduce code duplication across test files.
"""

import copy
import logging
import os
import shutil
import subprocess
import sys
import tempfile
import unittest
from unittest.mock import Mock

# Add parent directory to path for module imports
_PARENT_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "..")
if _PARENT_DIR not in sys.path:
    sys.path.insert(0, _PARENT_DIR)

from colored_logger import clear_secrets  # noqa: E402
from pipeline_runner.config import DEFAULT_CONFIG  # noqa: E402

TEST_SHA = "0123456789abcdef0123456789abcdef01234567"

TEST_SECRETS = {
    "SONAR_HOST_URL": "https://sonar.example.com",
    "SONAR_PROJECTKEY": "demo-project",
    "SONAR_TOKEN": "sonar-token-123",
    "WIF_PROVIDER": "projects/123/locations/global/workloadIdentityPools/pool/providers/gh",
    "WIF_SERVICE_ACCOUNT": "deployer@cicddemo-451910.iam.gserviceaccount.com",
    "VM_NAME": "app-vm",
}

EXPECTED_IMAGE = (
    f"us-central1-docker.pkg.dev/cicddemo-451910/my-first-repo/{TEST_SHA}"
)


class BaseTestCase(unittest.TestCase):
    """Base test case that handles common setup and teardown operations."""

    def setUp(self):
        """Set up common test fixtures."""
        # Disable logging during tests to reduce noise
        logging.disable(logging.CRITICAL)

    def tearDown(self):
        """Clean up after tests."""
        logging.disable(logging.NOTSET)
        clear_secrets()


class TempDirTestCase(BaseTestCase):
    """Base test case that provides temporary directory management."""

    def setUp(self):
        """Set up test fixtures including temporary directory."""
        super().setUp()
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Clean up temporary directory and other fixtures."""
        super().tearDown()
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class MockFactory:
    """Factory class for creating common mock objects."""

    @staticmethod
    def create_http_response(json_data=None, raise_for_status=None, status_code=200):
        """Create a mock HTTP response object."""
        mock_response = Mock()
        mock_response.status_code = status_code

        if raise_for_status is not None:
            mock_response.raise_for_status.side_effect = raise_for_status
        else:
            mock_response.raise_for_status.return_value = None

        if json_data is not None:
            mock_response.json.return_value = json_data

        return mock_response

    @staticmethod
    def create_completed_process(returncode=0, stdout="", stderr="", args=None):
        """Create a CompletedProcess like subprocess.run returns."""
        return subprocess.CompletedProcess(
            args or [], returncode, stdout=stdout, stderr=stderr
        )

    @staticmethod
    def create_config(workspace, **global_overrides):
        """Create a runner config rooted at ``workspace``."""
        config = copy.deepcopy(DEFAULT_CONFIG)
        config["global"]["workspace"] = workspace
        config["global"]["env_file"] = None
        config["global"].update(global_overrides)
        return config


class TestDataFixtures:
    """Common test data fixtures."""

    @staticmethod
    def get_minimal_manifest():
        """A small two-job manifest exercising run steps and needs."""
        return {
            "name": "Demo",
            True: {"push": {"branches": ["main"]}},
            "env": {"GREETING": "hello"},
            "secrets": ["API_TOKEN"],
            "jobs": {
                "build": {
                    "steps": [
                        {"name": "Say hello", "id": "hello", "run": "echo ${{ env.GREETING }}"},
                        {"name": "Use token", "run": "echo ${{ secrets.API_TOKEN }}"},
                    ]
                },
                "ship": {
                    "needs": "build",
                    "steps": [{"name": "Ship it", "run": "echo ship"}],
                },
            },
        }
