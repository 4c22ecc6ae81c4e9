"""
Kubernetes Job builder for pipeline steps.
"""

from kubernetes import client
from typing import List, Dict, Optional, Union
import hashlib

from controller.src.config import get_settings
from controller.src.models.step import SecretRef

settings = get_settings()

WORKSPACE_VOLUME = "workspace"

def build_job_name(run_id: str, step_order: int, step_name: str) -> str:
    """Generate a unique job name."""
    # K8s names must be lowercase, alphanumeric, max 63 chars
    safe_name = step_name.lower().replace(" ", "-").replace("_", "-")
    safe_name = "".join(c for c in safe_name if c.isalnum() or c == "-")
    safe_name = safe_name[:20].strip("-")  # Truncate step name

    # Use short hash of run_id for uniqueness
    run_hash = hashlib.sha256(run_id.encode()).hexdigest()[:8]

    return f"cv-{run_hash}-{step_order}-{safe_name}"

def build_env(
    run_id: str,
    step_order: int,
    step_name: str,
    env_vars: Optional[Dict[str, Union[str, SecretRef]]] = None,
) -> List[client.V1EnvVar]:
    env = [
        client.V1EnvVar(name="CONVEYOR_RUN_ID", value=run_id),
        client.V1EnvVar(name="CONVEYOR_STEP_ORDER", value=str(step_order)),
        client.V1EnvVar(name="CONVEYOR_STEP_NAME", value=step_name),
    ]

    for key, value in (env_vars or {}).items():
        if isinstance(value, SecretRef):
            # Resolved by the kubelet at pod start, never stored in the Job spec
            env.append(client.V1EnvVar(
                name=key,
                value_from=client.V1EnvVarSource(
                    secret_key_ref=client.V1SecretKeySelector(
                        name=settings.k8s_secret_name,
                        key=value.from_secret,
                    )
                ),
            ))
        else:
            env.append(client.V1EnvVar(name=key, value=value))
    return env

def build_job(
    run_id: str,
    step_order: int,
    step_name: str,
    image: str,
    commands: List[str],
    env_vars: Optional[Dict[str, Union[str, SecretRef]]] = None,
    timeout: int = 600,
    workspace: Optional[str] = None,
    pull_policy: str = "IfNotPresent",
) -> client.V1Job:
    """
    Build a Kubernetes Job for a pipeline step.
    """
    job_name = build_job_name(run_id, step_order, step_name)
    labels = {
        "app": "conveyor",
        "run-id": run_id,
        "step-order": str(step_order),
    }

    # Join commands with && so it fails fast on error
    shell_command = " && ".join(commands)

    volumes = None
    volume_mounts = None
    if workspace and settings.k8s_workspace_pvc:
        # Each run gets its own directory on the shared claim
        volumes = [
            client.V1Volume(
                name=WORKSPACE_VOLUME,
                persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                    claim_name=settings.k8s_workspace_pvc,
                ),
            )
        ]
        volume_mounts = [
            client.V1VolumeMount(
                name=WORKSPACE_VOLUME,
                mount_path=workspace,
                sub_path=run_id,
            )
        ]

    container = client.V1Container(
        name="step",
        image=image,
        image_pull_policy=pull_policy,
        command=["/bin/sh", "-c"],
        args=[shell_command],
        env=build_env(run_id, step_order, step_name, env_vars),
        working_dir=workspace,
        volume_mounts=volume_mounts,
        resources=client.V1ResourceRequirements(
            requests={"cpu": "100m", "memory": "128Mi"},
            limits={"cpu": "500m", "memory": "512Mi"},
        ),
    )

    pod_spec = client.V1PodSpec(
        containers=[container],
        restart_policy="Never",
        volumes=volumes,
    )

    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(labels=labels),
        spec=pod_spec,
    )

    job_spec = client.V1JobSpec(
        template=template,
        backoff_limit=0,  # Don't retry failed jobs
        active_deadline_seconds=timeout,
        ttl_seconds_after_finished=settings.job_ttl_after_finished,
    )

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=settings.k8s_namespace,
            labels=labels,
        ),
        spec=job_spec,
    )

def get_job_status(job: client.V1Job) -> str:
    """
    Determine job status from Kubernetes Job object.
    Returns: 'pending', 'running', 'succeeded', 'failed'
    """
    if job.status is None:
        return "pending"

    if job.status.succeeded and job.status.succeeded > 0:
        return "succeeded"

    if job.status.failed and job.status.failed > 0:
        return "failed"

    if job.status.active and job.status.active > 0:
        return "running"

    return "pending"
