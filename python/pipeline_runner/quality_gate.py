import logging

import requests

logger = logging.getLogger(__name__)

PASSING_STATUS = "OK"


class QualityGateError(Exception):
    """Raised when the quality gate status cannot be fetched or read."""


def fetch_quality_gate_status(
    host_url: str, project_key: str, token: str, timeout: int = 30
) -> str:
    """
    Fetches the quality gate status of a project from a SonarQube server.

    The token is sent as the basic-auth user name with an empty password.
    """
    if not host_url or not project_key:
        raise QualityGateError("SonarQube host URL and project key are required")

    url = f"{host_url.rstrip('/')}/api/qualitygates/project_status"
    try:
        res = requests.get(
            url,
            params={"projectKey": project_key},
            auth=(token, ""),
            timeout=timeout,
        )
        res.raise_for_status()
        payload = res.json()
    except requests.exceptions.RequestException as e:
        raise QualityGateError(f"Error fetching quality gate status: {e}") from e
    except ValueError as e:
        raise QualityGateError(f"Quality gate response is not JSON: {e}") from e

    project_status = payload.get("projectStatus") if isinstance(payload, dict) else None
    status = project_status.get("status") if isinstance(project_status, dict) else None
    if not status or not isinstance(status, str):
        raise QualityGateError(f"Quality gate response has no status: {payload}")

    logger.info("Quality gate status for %s: %s", project_key, status)
    return status


def gate_exit_code(status: str) -> int:
    """Exit code for a quality gate status: 0 only for an exact "OK"."""
    return 0 if status == PASSING_STATUS else 1
