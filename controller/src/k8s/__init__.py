from controller.src.k8s.client import (
    KubernetesUnavailable,
    init_k8s_client,
    get_batch_api,
    get_core_api,
    ensure_namespace,
    delete_job,
)
from controller.src.k8s.job_builder import (
    build_env,
    build_job,
    build_job_name,
    get_job_status,
)

__all__ = [
    "KubernetesUnavailable",
    "init_k8s_client",
    "get_batch_api",
    "get_core_api",
    "ensure_namespace",
    "delete_job",
    "build_env",
    "build_job",
    "build_job_name",
    "get_job_status",
]
