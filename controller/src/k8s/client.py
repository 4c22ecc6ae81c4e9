"""
Kubernetes API access for the step runner.
"""

from functools import lru_cache
import logging

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from controller.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

class KubernetesUnavailable(Exception):
    """Raised when no cluster configuration can be loaded."""
    pass

@lru_cache()
def get_api_client() -> client.ApiClient:
    """Load cluster credentials once and share the resulting client."""
    try:
        if settings.k8s_in_cluster:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        else:
            config.load_kube_config()
            logger.info("Loaded local Kubernetes config")
    except ConfigException as e:
        raise KubernetesUnavailable(f"Cannot load Kubernetes config: {e}")

    return client.ApiClient()

def get_batch_api() -> client.BatchV1Api:
    """BatchV1 API for Job operations."""
    return client.BatchV1Api(get_api_client())

def get_core_api() -> client.CoreV1Api:
    """CoreV1 API for Pod and Namespace operations."""
    return client.CoreV1Api(get_api_client())

def init_k8s_client() -> bool:
    """Load config and check the API server answers. Returns False on failure."""
    try:
        get_core_api().list_namespace(limit=1)
    except KubernetesUnavailable as e:
        logger.error(str(e))
        return False
    except ApiException as e:
        logger.error(f"Kubernetes API not reachable: {e.status} {e.reason}")
        return False

    logger.info("Kubernetes client initialized successfully")
    return True

def ensure_namespace():
    """Create the step namespace when it does not exist yet."""
    core_v1 = get_core_api()

    try:
        core_v1.read_namespace(name=settings.k8s_namespace)
        return
    except ApiException as e:
        if e.status != 404:
            raise

    core_v1.create_namespace(
        body=client.V1Namespace(metadata=client.V1ObjectMeta(name=settings.k8s_namespace))
    )
    logger.info(f"Created namespace '{settings.k8s_namespace}'")

def delete_job(job_name: str):
    """Delete a step Job together with its pod. A missing Job is not an error."""
    try:
        get_batch_api().delete_namespaced_job(
            name=job_name,
            namespace=settings.k8s_namespace,
            body=client.V1DeleteOptions(propagation_policy="Foreground"),
        )
        logger.info(f"Deleted job {job_name}")
    except ApiException as e:
        if e.status != 404:
            logger.error(f"Failed to delete job {job_name}: {e}")
