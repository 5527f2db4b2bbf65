"""
Pipeline runner for the Java service
====================================

Loads a workflow manifest, checks it, and runs its build, scan and deploy
steps against the external tools they name.
"""

__version__ = "1.0.0"

from .config import ConfigError, load_config
from .manifest import ManifestError, Pipeline, load_manifest
from .runner import JobStatus, PipelineRunner, RunResult, StepStatus
from .validation import validate_pipeline

__all__ = [
    "ConfigError",
    "JobStatus",
    "ManifestError",
    "Pipeline",
    "PipelineRunner",
    "RunResult",
    "StepStatus",
    "load_config",
    "load_manifest",
    "validate_pipeline",
]
