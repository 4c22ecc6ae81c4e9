"""
Collect logs and exit codes from Kubernetes pods.
"""

import logging
from typing import Optional
from kubernetes.client.rest import ApiException

from controller.src.k8s.client import get_core_api
from controller.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

def get_job_pod(job_name: str):
    """Get the pod created for a job."""
    core_v1 = get_core_api()

    try:
        pods = core_v1.list_namespaced_pod(
            namespace=settings.k8s_namespace,
            label_selector=f"job-name={job_name}",
        )
        if pods.items:
            return pods.items[0]
        return None
    except ApiException as e:
        logger.error(f"Failed to get pod for job {job_name}: {e}")
        return None

def collect_logs(job_name: str) -> str:
    """Collect mixed stdout/stderr from a job's pod."""
    core_v1 = get_core_api()

    pod = get_job_pod(job_name)
    if pod is None:
        return "No pod found for job"

    try:
        return core_v1.read_namespaced_pod_log(
            name=pod.metadata.name,
            namespace=settings.k8s_namespace,
            tail_lines=1000,  # Limit log lines
        )
    except ApiException as e:
        if e.status == 400:
            # Pod never started
            return "Pod did not start"
        logger.error(f"Failed to collect logs for {pod.metadata.name}: {e}")
        return f"Error collecting logs: {e.reason}"

def get_exit_code(job_name: str) -> Optional[int]:
    """Exit code of the step container, None when it has not terminated."""
    pod = get_job_pod(job_name)
    if pod is None or pod.status is None:
        return None

    for container in pod.status.container_statuses or []:
        terminated = container.state.terminated if container.state else None
        if terminated is not None:
            return terminated.exit_code
    return None
